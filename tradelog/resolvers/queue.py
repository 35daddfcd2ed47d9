"""Durable retry queue for CUSIPs the live lookup could not resolve.

State machine per identifier:

    pending --claim--> processing --complete--> completed
                           |
                           +--fail--> pending   (attempts + 1, backoff)
                           +--fail--> failed    (attempts >= max_attempts)

A pending item is claimable once ``now - last_attempt_at`` has reached the
backoff for its attempt count (30s, 60s, 5m, 15m, 30m). A processing item
whose claim is older than the visibility timeout is claimable again, which
covers a worker that died mid-attempt. A failed item only returns to
pending when it is re-requested with a strictly higher priority.

The state machine lives in ``QueueStore``; backends only implement the
storage primitives. ``_save`` is a conditional write on the previous
status and claim time so two workers cannot both claim the same item.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from .. import config

logger = logging.getLogger(__name__)

# Conditional merge attempts before enqueue gives up under contention
_ENQUEUE_ATTEMPTS = 5

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ResolutionQueueItem:
    """One identifier waiting for (or done with) background resolution."""

    identifier: str
    priority: int = 1
    status: str = PENDING
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    user_ids: list[str] = field(default_factory=list)
    ticker: Optional[str] = None
    source: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_row(self) -> dict[str, Any]:
        return {
            "cusip": self.identifier,
            "priority": self.priority,
            "status": self.status,
            "attempts": self.attempts,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "user_ids": list(self.user_ids),
            "ticker": self.ticker,
            "resolution_source": self.source,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ResolutionQueueItem":
        def ts(value: Any) -> Optional[datetime]:
            if not value:
                return None
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

        return cls(
            identifier=row["cusip"],
            priority=int(row.get("priority") or 1),
            status=row.get("status") or PENDING,
            attempts=int(row.get("attempts") or 0),
            last_attempt_at=ts(row.get("last_attempt_at")),
            user_ids=list(row.get("user_ids") or []),
            ticker=row.get("ticker"),
            source=row.get("resolution_source"),
            error_message=row.get("error_message"),
            created_at=ts(row.get("created_at")) or _utcnow(),
            updated_at=ts(row.get("updated_at")) or _utcnow(),
        )


def backoff_seconds(
    attempts: int, delays: tuple[float, ...] = config.QUEUE_RETRY_DELAYS_SEC
) -> float:
    """Wait required before the next attempt after ``attempts`` failures."""
    if attempts <= 0:
        return 0.0
    return float(delays[min(attempts - 1, len(delays) - 1)])


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class QueueStore:
    """Queue semantics over abstract storage primitives."""

    def __init__(
        self,
        clock: Callable[[], datetime] = _utcnow,
        retry_delays: tuple[float, ...] = config.QUEUE_RETRY_DELAYS_SEC,
        max_attempts: int = config.QUEUE_MAX_ATTEMPTS,
        visibility_timeout: float = config.QUEUE_VISIBILITY_TIMEOUT_SEC,
    ) -> None:
        self.clock = clock
        self.retry_delays = retry_delays
        self.max_attempts = max_attempts
        self.visibility_timeout = visibility_timeout

    # -- storage primitives (backends) ---------------------------------

    def _load(self, identifier: str) -> Optional[ResolutionQueueItem]:
        raise NotImplementedError

    def _insert(self, item: ResolutionQueueItem) -> bool:
        raise NotImplementedError

    def _save(
        self,
        item: ResolutionQueueItem,
        expected_status: Optional[str] = None,
        expected_last_attempt: Optional[datetime] = None,
    ) -> bool:
        raise NotImplementedError

    def _candidates(self, limit: int) -> list[ResolutionQueueItem]:
        raise NotImplementedError

    def _all(self) -> list[ResolutionQueueItem]:
        raise NotImplementedError

    def _delete_finished_before(self, cutoff: datetime) -> int:
        raise NotImplementedError

    # -- queue operations ----------------------------------------------

    def is_eligible(self, item: ResolutionQueueItem, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        if item.status == PENDING:
            if item.attempts == 0 or item.last_attempt_at is None:
                return True
            elapsed = (now - item.last_attempt_at).total_seconds()
            return elapsed >= backoff_seconds(item.attempts, self.retry_delays)
        if item.status == PROCESSING:
            if item.last_attempt_at is None:
                return True
            return (now - item.last_attempt_at).total_seconds() >= self.visibility_timeout
        return False

    def enqueue(
        self, identifier: str, priority: int = 1, user_id: Optional[str] = None
    ) -> ResolutionQueueItem:
        """Add an identifier or merge a repeat request into the existing item.

        The merge is a conditional write on the status and claim time read,
        so a claim, completion or failure landing in between is re-read
        rather than overwritten.
        """
        identifier = identifier.strip().upper()
        for _ in range(_ENQUEUE_ATTEMPTS):
            now = self.clock()
            item = self._load(identifier)

            if item is None:
                item = ResolutionQueueItem(
                    identifier=identifier,
                    priority=priority,
                    user_ids=[user_id] if user_id else [],
                    created_at=now,
                    updated_at=now,
                )
                if self._insert(item):
                    logger.info("[QUEUE] Enqueued %s (priority %d)", identifier, priority)
                    return item
                # Lost an insert race; merge into the row that won
                continue

            prev_status, prev_attempt = item.status, item.last_attempt_at
            if item.status == FAILED and priority > item.priority:
                logger.info(
                    "[QUEUE] Reviving failed %s (priority %d -> %d)",
                    identifier, item.priority, priority,
                )
                item.status = PENDING
                item.attempts = 0
                item.last_attempt_at = None
                item.error_message = None

            item.priority = max(item.priority, priority)
            if user_id and user_id not in item.user_ids:
                item.user_ids.append(user_id)
            item.updated_at = now
            if self._save(item, expected_status=prev_status, expected_last_attempt=prev_attempt):
                return item
            logger.debug("[QUEUE] %s changed during enqueue, retrying", identifier)

        raise RuntimeError(f"could not enqueue {identifier}: item kept changing")

    def claim(self, limit: int = config.QUEUE_BATCH_SIZE) -> list[ResolutionQueueItem]:
        """Claim up to ``limit`` eligible items, highest priority first."""
        now = self.clock()
        claimed: list[ResolutionQueueItem] = []
        for item in self._candidates(limit * 4):
            if len(claimed) >= limit:
                break
            if not self.is_eligible(item, now):
                continue
            prev_status, prev_attempt = item.status, item.last_attempt_at
            if prev_status == PROCESSING:
                logger.warning("[QUEUE] Reclaiming stale claim on %s", item.identifier)
            item.status = PROCESSING
            item.last_attempt_at = now
            item.updated_at = now
            if self._save(item, expected_status=prev_status, expected_last_attempt=prev_attempt):
                claimed.append(item)
        return claimed

    def complete(self, identifier: str, ticker: str, source: str = "provider") -> Optional[ResolutionQueueItem]:
        item = self._load(identifier.upper())
        if item is None:
            return None
        item.status = COMPLETED
        item.ticker = ticker
        item.source = source
        item.error_message = None
        item.updated_at = self.clock()
        self._save(item)
        logger.info("[QUEUE] %s resolved to %s via %s", item.identifier, ticker, source)
        return item

    def fail(self, identifier: str, error: Optional[str] = None) -> Optional[ResolutionQueueItem]:
        """Record a failed attempt; the item is failed once attempts run out."""
        item = self._load(identifier.upper())
        if item is None:
            return None
        item.attempts += 1
        item.error_message = error
        item.updated_at = self.clock()
        if item.attempts >= self.max_attempts:
            item.status = FAILED
            logger.warning(
                "[QUEUE] %s failed permanently after %d attempts: %s",
                item.identifier, item.attempts, error,
            )
        else:
            item.status = PENDING
            logger.info(
                "[QUEUE] %s attempt %d failed, retry in %.0fs",
                item.identifier, item.attempts, backoff_seconds(item.attempts, self.retry_delays),
            )
        self._save(item)
        return item

    def get(self, identifier: str) -> Optional[ResolutionQueueItem]:
        return self._load(identifier.strip().upper())

    def stats(self) -> dict[str, int]:
        counts = {PENDING: 0, PROCESSING: 0, COMPLETED: 0, FAILED: 0}
        for item in self._all():
            counts[item.status] = counts.get(item.status, 0) + 1
        counts["total"] = sum(counts.values())
        return counts

    def cleanup(self, older_than_days: float = config.QUEUE_RETENTION_DAYS) -> int:
        """Delete completed and failed items untouched for ``older_than_days``."""
        cutoff = self.clock() - timedelta(days=older_than_days)
        removed = self._delete_finished_before(cutoff)
        if removed:
            logger.info("[QUEUE] Cleaned up %d finished items", removed)
        return removed


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class MemoryQueueStore(QueueStore):
    """In-process queue. Items are copied in and out so callers cannot
    mutate stored state behind the lock."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._items: dict[str, ResolutionQueueItem] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _copy(item: ResolutionQueueItem) -> ResolutionQueueItem:
        return replace(item, user_ids=list(item.user_ids))

    def _load(self, identifier: str) -> Optional[ResolutionQueueItem]:
        with self._lock:
            item = self._items.get(identifier)
            return self._copy(item) if item else None

    def _insert(self, item: ResolutionQueueItem) -> bool:
        with self._lock:
            if item.identifier in self._items:
                return False
            self._items[item.identifier] = self._copy(item)
            return True

    def _save(
        self,
        item: ResolutionQueueItem,
        expected_status: Optional[str] = None,
        expected_last_attempt: Optional[datetime] = None,
    ) -> bool:
        with self._lock:
            current = self._items.get(item.identifier)
            if expected_status is not None:
                if current is None or current.status != expected_status:
                    return False
                if current.last_attempt_at != expected_last_attempt:
                    return False
            self._items[item.identifier] = self._copy(item)
            return True

    def _candidates(self, limit: int) -> list[ResolutionQueueItem]:
        with self._lock:
            open_items = [i for i in self._items.values() if i.status in (PENDING, PROCESSING)]
        open_items.sort(key=lambda i: (-i.priority, i.created_at))
        return [self._copy(i) for i in open_items]

    def _all(self) -> list[ResolutionQueueItem]:
        with self._lock:
            return [self._copy(i) for i in self._items.values()]

    def _delete_finished_before(self, cutoff: datetime) -> int:
        with self._lock:
            doomed = [
                k for k, i in self._items.items()
                if i.status in (COMPLETED, FAILED) and i.updated_at < cutoff
            ]
            for k in doomed:
                del self._items[k]
            return len(doomed)


class SupabaseQueueStore(QueueStore):
    """Queue rows in a Supabase table keyed by ``cusip``.

    Claims are conditional updates (``status`` and ``last_attempt_at`` must
    still hold the values read), so concurrent workers in separate
    processes never both win the same item.
    """

    def __init__(self, client: Any, table: str = "cusip_lookup_queue", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.client = client
        self.table = table

    def _load(self, identifier: str) -> Optional[ResolutionQueueItem]:
        resp = self.client.table(self.table).select("*").eq("cusip", identifier).limit(1).execute()
        rows = resp.data or []
        return ResolutionQueueItem.from_row(rows[0]) if rows else None

    def _insert(self, item: ResolutionQueueItem) -> bool:
        try:
            self.client.table(self.table).insert(item.to_row()).execute()
        except Exception as e:
            # Unique violation: another writer inserted first
            logger.debug("[QUEUE] Insert of %s rejected: %s", item.identifier, e)
            return False
        return True

    def _save(
        self,
        item: ResolutionQueueItem,
        expected_status: Optional[str] = None,
        expected_last_attempt: Optional[datetime] = None,
    ) -> bool:
        row = item.to_row()
        row.pop("cusip")
        row.pop("created_at")
        query = self.client.table(self.table).update(row).eq("cusip", item.identifier)
        if expected_status is not None:
            query = query.eq("status", expected_status)
            if expected_last_attempt is None:
                query = query.is_("last_attempt_at", "null")
            else:
                query = query.eq("last_attempt_at", expected_last_attempt.isoformat())
        resp = query.execute()
        return bool(resp.data)

    def _candidates(self, limit: int) -> list[ResolutionQueueItem]:
        resp = (
            self.client.table(self.table)
            .select("*")
            .in_("status", [PENDING, PROCESSING])
            .order("priority", desc=True)
            .order("created_at")
            .limit(limit)
            .execute()
        )
        return [ResolutionQueueItem.from_row(r) for r in resp.data or []]

    def _all(self) -> list[ResolutionQueueItem]:
        resp = self.client.table(self.table).select("*").execute()
        return [ResolutionQueueItem.from_row(r) for r in resp.data or []]

    def _delete_finished_before(self, cutoff: datetime) -> int:
        resp = (
            self.client.table(self.table)
            .delete()
            .in_("status", [COMPLETED, FAILED])
            .lt("updated_at", cutoff.isoformat())
            .execute()
        )
        return len(resp.data or [])
