"""Background sweeps over the CUSIP retry queue.

Each sweep claims a batch, asks the provider for all of it in one
``batch_lookup`` call, and falls back to at most one inference call per
item still unresolved. Successes are cached permanently, marked complete,
patched into the owning users' trades and announced through the notifier.
Failures go back to the queue with backoff, or are reported as exhausted.

Only one sweep runs at a time. A trigger arriving while a sweep is in
progress sets a rerun flag, and the running sweep does one more pass
instead of a second sweep starting alongside it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .. import config
from ..errors import ExhaustedRetryError, ResolutionError
from .cache import NO_EXPIRY, cusip_cache_key
from .identifiers import normalize_ticker
from .queue import FAILED, QueueStore, ResolutionQueueItem

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    claimed: list[str] = field(default_factory=list)
    resolved: dict[str, str] = field(default_factory=dict)
    sources: dict[str, str] = field(default_factory=dict)
    retried: list[str] = field(default_factory=list)
    exhausted: list[ExhaustedRetryError] = field(default_factory=list)
    patched_trades: int = 0
    passes: int = 0


class ResolutionWorker:
    def __init__(
        self,
        queue: QueueStore,
        cache: Any,
        provider: Any,
        inference: Any = None,
        trade_store: Any = None,
        notifier: Optional[Callable[[dict[str, Any]], None]] = None,
        batch_size: int = config.QUEUE_BATCH_SIZE,
        interval: float = config.QUEUE_INTERVAL_SEC,
    ) -> None:
        self.queue = queue
        self.cache = cache
        self.provider = provider
        self.inference = inference
        self.trade_store = trade_store
        self.notifier = notifier
        self.batch_size = batch_size
        self.interval = interval

        self._sweep_lock = threading.Lock()
        self._rerun = threading.Event()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Sweeping
    # ------------------------------------------------------------------

    def sweep(self) -> Optional[SweepResult]:
        """Run a sweep now. Returns None if one was already running."""
        if not self._sweep_lock.acquire(blocking=False):
            self._rerun.set()
            logger.debug("[QUEUE] Sweep already running, flagged for rerun")
            return None
        try:
            result = SweepResult()
            while True:
                self._rerun.clear()
                self._sweep_once(result)
                result.passes += 1
                if not self._rerun.is_set():
                    break
            if result.claimed:
                logger.info(
                    "[QUEUE] Sweep done: %d claimed, %d resolved, %d retrying, %d exhausted, %d trades patched",
                    len(result.claimed), len(result.resolved), len(result.retried),
                    len(result.exhausted), result.patched_trades,
                )
            return result
        finally:
            self._sweep_lock.release()
            # A kick that landed after the last rerun check
            if self._rerun.is_set():
                self._rerun.clear()
                self._wake.set()

    def _sweep_once(self, result: SweepResult) -> None:
        items = self.queue.claim(self.batch_size)
        if not items:
            return
        idents = [item.identifier for item in items]
        result.claimed.extend(idents)

        batch_error = None
        try:
            hits = self.provider.batch_lookup(idents)
        except ResolutionError as e:
            logger.warning("[QUEUE] Batch lookup failed for %d identifiers: %s", len(idents), e)
            hits = {}
            batch_error = str(e)
        except Exception as e:
            logger.warning("[QUEUE] Batch lookup crashed for %d identifiers", len(idents), exc_info=True)
            hits = {}
            batch_error = f"batch lookup crashed: {e}"
        if not isinstance(hits, dict):
            hits = {}

        # user_id -> {cusip: ticker}, and patched counts per user
        notices: dict[Optional[str], dict[str, str]] = {}
        patched_by_user: dict[Optional[str], int] = {}

        for item in items:
            try:
                self._resolve_item(item, hits, batch_error, result, notices, patched_by_user)
            except Exception as e:
                logger.exception("[QUEUE] Resolution of %s crashed", item.identifier)
                self._record_failure(item, f"resolution crashed: {e}", result)

        for user_id, mappings in notices.items():
            self._notify({
                "type": "cusip_resolved",
                "user_id": user_id,
                "mappings": mappings,
                "patched_trades": patched_by_user.get(user_id, 0),
            })

    def _resolve_item(
        self,
        item: ResolutionQueueItem,
        hits: dict[str, Any],
        batch_error: Optional[str],
        result: SweepResult,
        notices: dict[Optional[str], dict[str, str]],
        patched_by_user: dict[Optional[str], int],
    ) -> None:
        ident = item.identifier
        ticker = normalize_ticker(hits.get(ident), ident)
        source = "provider"
        error = batch_error or "no provider match"

        if ticker is None and self._inference_available():
            try:
                ticker = normalize_ticker(self.inference.infer_ticker(ident), ident)
                source = "inference"
            except ResolutionError as e:
                error = str(e)
            if ticker is None and error == "no provider match":
                error = "no provider or inference match"

        if ticker:
            self._record_success(item, ticker, source, result, notices, patched_by_user)
        else:
            self._record_failure(item, error, result)

    def _inference_available(self) -> bool:
        if self.inference is None:
            return False
        return bool(getattr(self.inference, "available", True))

    def _record_success(
        self,
        item: ResolutionQueueItem,
        ticker: str,
        source: str,
        result: SweepResult,
        notices: dict[Optional[str], dict[str, str]],
        patched_by_user: dict[Optional[str], int],
    ) -> None:
        ident = item.identifier
        self.cache.set(config.CUSIP_CACHE_TYPE, cusip_cache_key(ident), ticker, ttl=NO_EXPIRY)
        self.queue.complete(ident, ticker, source)
        result.resolved[ident] = ticker
        result.sources[ident] = source
        logger.info("[CUSIP] Resolved %s -> %s (%s)", ident, ticker, source)

        for user_id in item.user_ids or [None]:
            patched = 0
            if self.trade_store is not None:
                patched = self.trade_store.patch_symbol(user_id, ident, ticker)
            result.patched_trades += patched
            patched_by_user[user_id] = patched_by_user.get(user_id, 0) + patched
            notices.setdefault(user_id, {})[ident] = ticker

    def _record_failure(self, item: ResolutionQueueItem, error: str, result: SweepResult) -> None:
        failed = self.queue.fail(item.identifier, error)
        if failed is not None and failed.status == FAILED:
            result.exhausted.append(ExhaustedRetryError(item.identifier, failed.attempts, error))
        else:
            result.retried.append(item.identifier)

    def _notify(self, event: dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(event)
        except Exception:
            logger.warning("[QUEUE] Notifier failed for %s", event.get("user_id"), exc_info=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="cusip-resolution-worker", daemon=True
        )
        self._thread.start()
        logger.info("[QUEUE] Resolution worker started (every %.0fs)", self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.info("[QUEUE] Resolution worker stopped")

    def kick(self) -> None:
        """Ask for a sweep soon: now if idle, or one more pass if busy."""
        if self._sweep_lock.locked():
            self._rerun.set()
        else:
            self._wake.set()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.sweep()
                self.queue.cleanup()
            except Exception:
                logger.exception("[QUEUE] Sweep crashed")
            self._wake.wait(self.interval)
            self._wake.clear()
