"""CUSIP -> ticker resolution for imported executions.

Lookup order, stopping at the first hit:

1. cache, user-scoped key first then the global key
2. live provider ``search_symbols`` (result cached globally)
3. the retry queue: a completed item's ticker is re-cached and returned;
   otherwise the CUSIP is enqueued, the worker is kicked and the caller
   keeps the raw CUSIP as the symbol until the worker patches it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from .. import config
from ..errors import ResolutionError
from .cache import NO_EXPIRY, MemoryCache, SupabaseCache, cusip_cache_key
from .identifiers import is_cusip, normalize_ticker, pick_ticker
from .inference import AnthropicInference
from .providers import ChainedProvider, OpenFigiProvider, YFinanceProvider
from .queue import COMPLETED, MemoryQueueStore, QueueStore, SupabaseQueueStore
from .trade_store import InMemoryTradeStore, SupabaseTradeStore
from .worker import ResolutionWorker

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    identifier: str
    ticker: Optional[str]
    status: str  # "cached" | "resolved" | "queued" | "invalid"
    source: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.ticker is not None


class SymbolResolver:
    def __init__(
        self,
        cache: Any,
        provider: Any,
        queue: QueueStore,
        worker: Optional[ResolutionWorker] = None,
        trade_store: Any = None,
    ) -> None:
        self.cache = cache
        self.provider = provider
        self.queue = queue
        self.worker = worker
        self.trade_store = trade_store

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _cached(self, cusip: str, user_id: Optional[str]) -> Optional[str]:
        if user_id:
            ticker = self.cache.get(config.CUSIP_CACHE_TYPE, cusip_cache_key(cusip, user_id))
            if ticker:
                return ticker
        return self.cache.get(config.CUSIP_CACHE_TYPE, cusip_cache_key(cusip))

    def resolve(self, identifier: str, user_id: Optional[str] = None, priority: int = 1) -> Resolution:
        cusip = (identifier or "").strip().upper()
        if not is_cusip(cusip):
            return Resolution(cusip, None, "invalid")

        ticker = self._cached(cusip, user_id)
        if ticker:
            return Resolution(cusip, ticker, "cached", "cache")

        # The worker may have finished after the cache entry was lost
        try:
            item = self.queue.get(cusip)
        except Exception:
            logger.warning("[CUSIP] Queue read failed for %s", cusip, exc_info=True)
            item = None
        if item is not None and item.status == COMPLETED and item.ticker:
            self.cache.set(config.CUSIP_CACHE_TYPE, cusip_cache_key(cusip), item.ticker, ttl=NO_EXPIRY)
            return Resolution(cusip, item.ticker, "cached", item.source or "queue")

        try:
            results = self.provider.search_symbols(cusip)
        except ResolutionError as e:
            logger.info("[CUSIP] Live lookup failed for %s, queueing: %s", cusip, e)
            results = []
        except Exception:
            logger.warning("[CUSIP] Live lookup crashed for %s, queueing", cusip, exc_info=True)
            results = []

        ticker = pick_ticker(results, cusip)
        if ticker:
            self.cache.set(config.CUSIP_CACHE_TYPE, cusip_cache_key(cusip), ticker)
            logger.info("[CUSIP] Resolved %s -> %s", cusip, ticker)
            return Resolution(cusip, ticker, "resolved", "provider")

        try:
            self.queue.enqueue(cusip, priority=priority, user_id=user_id)
        except Exception:
            logger.warning("[CUSIP] Could not enqueue %s, leaving it unresolved", cusip, exc_info=True)
            return Resolution(cusip, None, "queued")
        if self.worker is not None:
            self.worker.kick()
        return Resolution(cusip, None, "queued")

    def resolve_many(
        self,
        identifiers: Iterable[str],
        user_id: Optional[str] = None,
        priority: int = 1,
    ) -> tuple[dict[str, str], list[str]]:
        """Resolve each distinct CUSIP once.

        Returns ``(mappings, unresolved)``. Identifiers that are not CUSIPs
        appear in neither.
        """
        mappings: dict[str, str] = {}
        unresolved: list[str] = []
        for ident in dict.fromkeys(i.strip().upper() for i in identifiers if i):
            res = self.resolve(ident, user_id=user_id, priority=priority)
            if res.ticker:
                mappings[ident] = res.ticker
            elif res.status == "queued":
                unresolved.append(ident)
        if unresolved:
            logger.info("[CUSIP] %d resolved, %d queued for retry", len(mappings), len(unresolved))
        return mappings, unresolved

    # ------------------------------------------------------------------
    # Manual mappings
    # ------------------------------------------------------------------

    def add_mapping(self, cusip: str, ticker: str, user_id: Optional[str] = None) -> int:
        """Store a user-provided mapping and patch trades that still carry the CUSIP.

        Returns the number of trades patched.
        """
        cusip = (cusip or "").strip().upper()
        if not is_cusip(cusip, validate_checksum=False):
            raise ValueError(f"Not a CUSIP: {cusip!r}")
        clean = normalize_ticker(ticker, cusip)
        if clean is None:
            raise ValueError(f"Not a ticker: {ticker!r}")

        self.cache.set(config.CUSIP_CACHE_TYPE, cusip_cache_key(cusip, user_id), clean, ttl=NO_EXPIRY)

        item = self.queue.get(cusip)
        if item is not None and item.status != COMPLETED and user_id is None:
            self.queue.complete(cusip, clean, "manual")

        patched = 0
        if self.trade_store is not None:
            patched = self.trade_store.patch_symbol(user_id, cusip, clean)
        logger.info("[CUSIP] Manual mapping %s -> %s (%s)", cusip, clean, user_id or "global")
        return patched

    def remove_mapping(self, cusip: str, user_id: Optional[str] = None) -> bool:
        key = cusip_cache_key(cusip.strip().upper(), user_id)
        return self.cache.invalidate(config.CUSIP_CACHE_TYPE, key) > 0

    def warm_cache(self, mappings: dict[str, str], user_id: Optional[str] = None) -> int:
        """Preload known mappings; invalid pairs are skipped."""
        loaded = 0
        for cusip, ticker in mappings.items():
            cusip = (cusip or "").strip().upper()
            clean = normalize_ticker(ticker, cusip)
            if not is_cusip(cusip, validate_checksum=False) or clean is None:
                logger.debug("[CUSIP] Skipping invalid warm mapping %r -> %r", cusip, ticker)
                continue
            self.cache.set(config.CUSIP_CACHE_TYPE, cusip_cache_key(cusip, user_id), clean)
            loaded += 1
        logger.info("[CACHE] Warmed %d CUSIP mappings", loaded)
        return loaded

    def queue_stats(self) -> dict[str, int]:
        return self.queue.stats()


def build_default_resolver(start_worker: bool = True, notifier=None) -> SymbolResolver:
    """Wire a resolver from the environment.

    Supabase-backed cache, queue and trade store when credentials are set,
    in-memory otherwise. Inference is enabled only with ANTHROPIC_API_KEY.
    """
    from ..storage.supabase_client import CACHE_TABLE, QUEUE_TABLE, get_client

    client = get_client()
    if client is not None:
        cache = SupabaseCache(client, table=CACHE_TABLE)
        queue: QueueStore = SupabaseQueueStore(client, table=QUEUE_TABLE)
        trade_store: Any = SupabaseTradeStore(client)
    else:
        cache = MemoryCache()
        queue = MemoryQueueStore()
        trade_store = InMemoryTradeStore()

    provider = ChainedProvider([OpenFigiProvider(), YFinanceProvider()])

    inference = AnthropicInference()
    if not inference.available:
        logger.info("[CUSIP] ANTHROPIC_API_KEY not set, ticker inference disabled")
        inference = None

    worker = ResolutionWorker(
        queue=queue,
        cache=cache,
        provider=provider,
        inference=inference,
        trade_store=trade_store,
        notifier=notifier,
    )
    if start_worker:
        worker.start()

    return SymbolResolver(cache, provider, queue, worker=worker, trade_store=trade_store)
