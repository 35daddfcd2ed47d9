"""Resolution cache with per-type TTLs.

Two interchangeable backends expose the same three calls:

    get(cache_type, key) -> value | None
    set(cache_type, key, value, ttl=None)
    invalidate(cache_type, key=None) -> int

``ttl=None`` uses the cache type's default lifetime; ``NO_EXPIRY`` keeps the
entry until it is invalidated. Reads and writes are not serialized against
each other across processes: the last writer wins, which is fine for
mappings that almost never change.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from .. import config

logger = logging.getLogger(__name__)

NO_EXPIRY = 0.0

DEFAULT_TTLS: dict[str, float] = {
    config.CUSIP_CACHE_TYPE: config.CUSIP_CACHE_TTL_SEC,
}
FALLBACK_TTL = 24 * 3600.0


def cusip_cache_key(cusip: str, user_id: Optional[str] = None) -> str:
    """User-scoped or global cache key for a CUSIP."""
    scope = user_id if user_id else "global"
    return f"{scope}:{cusip.upper()}"


class MemoryCache:
    """Process-local cache. Used in tests and when Supabase is absent."""

    def __init__(
        self,
        default_ttls: Optional[dict[str, float]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttls = dict(DEFAULT_TTLS)
        if default_ttls:
            self._ttls.update(default_ttls)
        self._clock = clock
        self._lock = threading.Lock()
        # {(cache_type, key): (value, expires_at or None)}
        self._entries: dict[tuple[str, str], tuple[Any, Optional[float]]] = {}
        self.hits = 0
        self.misses = 0

    def _expiry(self, cache_type: str, ttl: Optional[float]) -> Optional[float]:
        if ttl is None:
            ttl = self._ttls.get(cache_type, FALLBACK_TTL)
        if ttl <= 0:
            return None
        return self._clock() + ttl

    def get(self, cache_type: str, key: str) -> Any:
        with self._lock:
            entry = self._entries.get((cache_type, key))
            if entry is None:
                self.misses += 1
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[(cache_type, key)]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, cache_type: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._entries[(cache_type, key)] = (value, self._expiry(cache_type, ttl))

    def invalidate(self, cache_type: str, key: Optional[str] = None) -> int:
        with self._lock:
            if key is not None:
                return 1 if self._entries.pop((cache_type, key), None) is not None else 0
            doomed = [k for k in self._entries if k[0] == cache_type]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}


class SupabaseCache:
    """Durable cache backed by a Supabase table.

    Table columns: cache_type, cache_key, value (jsonb), expires_at
    (timestamptz, null = never), updated_at. A failing read counts as a
    miss and a failing write is logged; the resolver then falls through
    to the live provider.
    """

    def __init__(
        self,
        client: Any,
        table: str = "resolution_cache",
        default_ttls: Optional[dict[str, float]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.client = client
        self.table = table
        self._ttls = dict(DEFAULT_TTLS)
        if default_ttls:
            self._ttls.update(default_ttls)
        self._clock = clock

    def get(self, cache_type: str, key: str) -> Any:
        try:
            resp = (
                self.client.table(self.table)
                .select("value, expires_at")
                .eq("cache_type", cache_type)
                .eq("cache_key", key)
                .limit(1)
                .execute()
            )
        except Exception:
            logger.warning("[CACHE] Read failed for %s/%s", cache_type, key, exc_info=True)
            return None

        rows = resp.data or []
        if not rows:
            return None
        row = rows[0]
        expires_at = row.get("expires_at")
        if expires_at:
            expiry = datetime.fromisoformat(str(expires_at).replace("Z", "+00:00"))
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
            if self._clock() >= expiry:
                return None
        return row.get("value")

    def set(self, cache_type: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if ttl is None:
            ttl = self._ttls.get(cache_type, FALLBACK_TTL)
        now = self._clock()
        expires_at = None if ttl <= 0 else (now + timedelta(seconds=ttl)).isoformat()
        try:
            self.client.table(self.table).upsert(
                {
                    "cache_type": cache_type,
                    "cache_key": key,
                    "value": value,
                    "expires_at": expires_at,
                    "updated_at": now.isoformat(),
                },
                on_conflict="cache_type,cache_key",
            ).execute()
        except Exception:
            logger.warning("[CACHE] Write failed for %s/%s", cache_type, key, exc_info=True)

    def invalidate(self, cache_type: str, key: Optional[str] = None) -> int:
        query = self.client.table(self.table).delete().eq("cache_type", cache_type)
        if key is not None:
            query = query.eq("cache_key", key)
        try:
            resp = query.execute()
        except Exception:
            logger.warning("[CACHE] Invalidate failed for %s/%s", cache_type, key, exc_info=True)
            return 0
        return len(resp.data or [])
