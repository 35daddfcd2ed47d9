"""Where produced trades live so late CUSIP resolutions can patch them.

The importer registers every trade it emits; when the retry worker
resolves a CUSIP it calls ``patch_symbol`` for each user that imported it
and the trades still carrying the raw identifier get the ticker.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterable, Optional

from ..models import RoundTripTrade

logger = logging.getLogger(__name__)

_ANONYMOUS = "global"


class InMemoryTradeStore:
    """Trades per user, patched in place."""

    def __init__(self) -> None:
        self._trades: dict[str, list[RoundTripTrade]] = {}
        self._lock = threading.Lock()

    def add(self, user_id: Optional[str], trades: Iterable[RoundTripTrade]) -> None:
        with self._lock:
            self._trades.setdefault(user_id or _ANONYMOUS, []).extend(trades)

    def trades(self, user_id: Optional[str] = None) -> list[RoundTripTrade]:
        with self._lock:
            return list(self._trades.get(user_id or _ANONYMOUS, []))

    def patch_symbol(self, user_id: Optional[str], cusip: str, ticker: str) -> int:
        """Replace ``cusip`` with ``ticker`` on the user's trades; returns the count."""
        cusip = cusip.upper()
        patched = 0
        with self._lock:
            for trade in self._trades.get(user_id or _ANONYMOUS, []):
                if trade.symbol.upper() != cusip:
                    continue
                trade.symbol = ticker
                if trade.instrument.underlying.upper() == cusip:
                    trade.instrument.underlying = ticker
                for ex in trade.executions:
                    if ex.symbol.upper() == cusip:
                        ex.symbol = ticker
                patched += 1
        if patched:
            logger.info("[CUSIP] Patched %d trades for %s: %s -> %s",
                        patched, user_id or _ANONYMOUS, cusip, ticker)
        return patched


class SupabaseTradeStore:
    """Patches persisted trade rows in a Supabase ``trades`` table."""

    def __init__(self, client: Any, table: str = "trades") -> None:
        self.client = client
        self.table = table

    def add(self, user_id: Optional[str], trades: Iterable[RoundTripTrade]) -> None:
        # Rows are written by the caller's persistence layer
        return None

    def patch_symbol(self, user_id: Optional[str], cusip: str, ticker: str) -> int:
        query = self.client.table(self.table).update({"symbol": ticker}).eq("symbol", cusip.upper())
        if user_id:
            query = query.eq("user_id", user_id)
        try:
            resp = query.execute()
        except Exception:
            logger.warning("[CUSIP] Failed to patch trades %s -> %s", cusip, ticker, exc_info=True)
            return 0
        patched = len(resp.data or [])
        if patched:
            logger.info("[CUSIP] Patched %d stored trades: %s -> %s", patched, cusip, ticker)
        return patched
