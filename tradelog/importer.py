"""
Import pipeline: broker export -> round-trip trades.

    parse -> convert currency -> resolve CUSIPs -> group by symbol
          -> reconstruct -> stream -> register for later patching

Only a FormatError from the parser fails the run. Bad rows, failed
conversions and unresolved CUSIPs are carried on the ImportResult.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterable, Optional

from .models import ExecutionRecord, ImportResult, RoundTripTrade, RowFailure, as_naive
from .parsers.execution_parser import ExecutionParser
from .reconstruction.position_reconstructor import PositionReconstructor
from .resolvers.identifiers import is_cusip
from .schemas import PositionSnapshot

logger = logging.getLogger(__name__)

# converter(amount, currency, timestamp) -> amount in USD
Converter = Callable[[float, str, Any], float]


class TradeImporter:
    """
    Usage:
        importer = TradeImporter(resolver=build_default_resolver())
        result = importer.run(raw_bytes, user_id="u1")
        result.to_dict()   # {"trades": [...], "unresolved_cusips": [...], ...}
    """

    def __init__(
        self,
        resolver: Any = None,
        parser: Optional[ExecutionParser] = None,
        converter: Optional[Converter] = None,
        trade_store: Any = None,
    ) -> None:
        self.resolver = resolver
        self.parser = parser or ExecutionParser()
        self.converter = converter
        if trade_store is None and resolver is not None:
            trade_store = getattr(resolver, "trade_store", None)
        self.trade_store = trade_store

    def run(
        self,
        content: bytes | str,
        broker: str = "auto",
        existing_positions: Optional[dict[str, PositionSnapshot | dict]] = None,
        existing_executions: Optional[Iterable[ExecutionRecord | dict]] = None,
        user_id: Optional[str] = None,
        on_trades: Optional[Callable[[list[RoundTripTrade]], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ImportResult:
        parsed = self.parser.parse(content, broker)
        logger.info(
            "[IMPORT] %s: %d executions from %d rows (%d skipped, %d failed)",
            parsed.broker, len(parsed.executions), parsed.total_rows,
            parsed.skipped_rows, len(parsed.failures),
        )
        result = ImportResult(
            broker=parsed.broker,
            failures=list(parsed.failures),
            total_rows=parsed.total_rows,
            skipped_rows=parsed.skipped_rows,
        )

        executions = self._convert(parsed.executions, result.failures)
        result.unresolved_cusips = self._resolve_symbols(executions, user_id)

        grouped = _group_by_symbol(executions)
        stored = _group_by_symbol(_coerce_executions(existing_executions or ()))
        existing_positions = existing_positions or {}

        for done, (symbol, symbol_execs) in enumerate(grouped.items()):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("[IMPORT] Cancelled with %d of %d symbols left", len(grouped) - done, len(grouped))
                break

            reconstructor = PositionReconstructor()
            trades = reconstructor.reconstruct(
                symbol,
                symbol_execs,
                existing=existing_positions.get(symbol),
                existing_executions=stored.get(symbol, ()),
            )
            result.duplicates_skipped += reconstructor.duplicates_skipped
            if not trades:
                continue

            result.trades.extend(trades)
            if on_trades is not None:
                on_trades(trades)
            if self.trade_store is not None:
                self.trade_store.add(user_id, trades)

        logger.info(
            "[IMPORT] %s: %d trades, %d duplicates skipped, %d unresolved CUSIPs",
            result.broker, len(result.trades), result.duplicates_skipped,
            len(result.unresolved_cusips),
        )
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _convert(
        self, executions: list[ExecutionRecord], failures: list[RowFailure]
    ) -> list[ExecutionRecord]:
        if self.converter is None:
            return executions

        converted = []
        for ex in executions:
            currency = (ex.currency or "USD").upper()
            if currency == "USD":
                converted.append(ex)
                continue
            try:
                ex.price = self.converter(ex.price, currency, ex.timestamp)
                ex.commission = self.converter(ex.commission, currency, ex.timestamp)
                ex.fees = self.converter(ex.fees, currency, ex.timestamp)
            except Exception as e:
                logger.warning(
                    "[IMPORT] Currency conversion failed for %s row %s (%s): %s",
                    ex.symbol, ex.row_index, currency, e,
                )
                failures.append(RowFailure(
                    row_index=ex.row_index if ex.row_index is not None else -1,
                    broker=ex.broker,
                    reason=f"currency conversion from {currency} failed: {e}",
                    symbol=ex.symbol,
                ))
                continue
            ex.currency = "USD"
            converted.append(ex)
        return converted

    def _resolve_symbols(self, executions: list[ExecutionRecord], user_id: Optional[str]) -> list[str]:
        """Swap CUSIP symbols for tickers in place; returns the unresolved CUSIPs."""
        cusips = list(dict.fromkeys(ex.symbol.upper() for ex in executions if is_cusip(ex.symbol)))
        if not cusips:
            return []
        if self.resolver is None:
            logger.info("[IMPORT] No resolver configured, %d CUSIPs left as symbols", len(cusips))
            return cusips

        mappings, unresolved = self.resolver.resolve_many(cusips, user_id=user_id)
        for ex in executions:
            ticker = mappings.get(ex.symbol.upper())
            if ticker is None:
                continue
            if ex.instrument.underlying.upper() == ex.symbol.upper():
                ex.instrument.underlying = ticker
            ex.symbol = ticker
        return unresolved


def _coerce_executions(items: Iterable[ExecutionRecord | dict]) -> list[ExecutionRecord]:
    records = []
    for item in items:
        records.append(item if isinstance(item, ExecutionRecord) else ExecutionRecord.from_dict(item))
    return records


def _group_by_symbol(executions: Iterable[ExecutionRecord]) -> dict[str, list[ExecutionRecord]]:
    """Group preserving first-seen symbol order; stable time sort within a symbol."""
    grouped: dict[str, list[ExecutionRecord]] = {}
    for ex in executions:
        grouped.setdefault(ex.symbol, []).append(ex)
    for symbol in grouped:
        grouped[symbol].sort(key=lambda e: as_naive(e.timestamp))
    return grouped
