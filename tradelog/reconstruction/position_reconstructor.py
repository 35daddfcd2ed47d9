"""
Position reconstructor: rebuild round-trip trades from a symbol's fills.

Takes one symbol's ExecutionRecords in time order, optionally continuing a
stored open position, and produces:
- One RoundTripTrade each time the net position returns to exactly zero
- At most one trailing open-position snapshot when input ends non-flat

Entry and exit sides are accumulated separately so weighted prices stay
correct under partial fills. A fill that would carry the position through
zero is split: the closing part finishes the current trade and the
remainder opens the next one, so no trade ever spans a zero crossing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, Optional

from ..models import (
    ExecutionRecord,
    InstrumentDescriptor,
    RoundTripTrade,
    as_naive,
    normalize_quantity,
)
from ..schemas import PositionSnapshot, coerce_snapshot
from .dedup import DedupGuard, execution_identity

logger = logging.getLogger(__name__)


@dataclass
class Position:
    """In-progress trade for one symbol."""

    symbol: str
    side: str  # "long" | "short"
    instrument: InstrumentDescriptor = field(default_factory=InstrumentDescriptor)
    broker: str = "generic"

    # Signed net quantity (+long / -short)
    quantity: float = 0

    # Opening side
    entry_value: float = 0.0
    entry_quantity: float = 0

    # Closing side
    exit_value: float = 0.0
    exit_quantity: float = 0

    commission: float = 0.0
    fees: float = 0.0

    executions: list[ExecutionRecord] = field(default_factory=list)
    opened_at: Optional[datetime] = None

    # Set when hydrated from a stored open trade
    originating_trade_id: Optional[str] = None
    is_existing_position: bool = False
    new_executions: int = 0

    @property
    def is_flat(self) -> bool:
        return self.quantity == 0

    @property
    def multiplier(self) -> float:
        return self.instrument.multiplier or 1

    def _opens(self, execution: ExecutionRecord) -> bool:
        return (execution.side == "buy") == (self.side == "long")

    def apply(self, execution: ExecutionRecord) -> Optional[ExecutionRecord]:
        """Apply one fill; return the part that crosses zero, if any."""
        remainder = None
        if self._opens(execution):
            part = execution
            self.entry_value += part.notional
            self.entry_quantity = normalize_quantity(self.entry_quantity + part.quantity)
        else:
            open_qty = abs(self.quantity)
            if execution.quantity > open_qty:
                part, remainder = split_execution(execution, open_qty)
            else:
                part = execution
            self.exit_value += part.notional
            self.exit_quantity = normalize_quantity(self.exit_quantity + part.quantity)

        self.quantity = normalize_quantity(self.quantity + part.signed_quantity)
        self.commission += part.commission
        self.fees += part.fees
        self.executions.append(part)
        self.new_executions += 1
        stamp = as_naive(part.timestamp)
        if self.opened_at is None or stamp < self.opened_at:
            self.opened_at = stamp
        return remainder


def split_execution(
    execution: ExecutionRecord, quantity: float
) -> tuple[ExecutionRecord, ExecutionRecord]:
    """Split a fill into ``quantity`` and the rest, prorating costs."""
    ratio = quantity / execution.quantity
    identity = execution_identity(execution)
    head_commission = round(execution.commission * ratio, 6)
    head_fees = round(execution.fees * ratio, 6)
    head = replace(
        execution,
        quantity=normalize_quantity(quantity),
        commission=head_commission,
        fees=head_fees,
        split_from=identity,
    )
    tail = replace(
        execution,
        quantity=normalize_quantity(execution.quantity - quantity),
        commission=round(execution.commission - head_commission, 6),
        fees=round(execution.fees - head_fees, 6),
        split_from=identity,
    )
    return head, tail


class PositionReconstructor:
    """Turn ordered fills into round-trip trades, one symbol at a time.

    Usage::

        reconstructor = PositionReconstructor()
        trades = reconstructor.reconstruct("AAPL", executions, existing=snapshot)
    """

    def __init__(self) -> None:
        self.duplicates_skipped = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def reconstruct(
        self,
        symbol: str,
        executions: Iterable[ExecutionRecord],
        existing: PositionSnapshot | dict | None = None,
        existing_executions: Iterable[ExecutionRecord] = (),
    ) -> list[RoundTripTrade]:
        """Reconstruct trades for one symbol.

        ``existing`` is the stored open trade to continue, if any.
        ``existing_executions`` are fills already stored on closed trades;
        they are never re-applied.
        """
        self.duplicates_skipped = 0
        guard = DedupGuard(existing_executions)
        position: Optional[Position] = None

        if existing is not None:
            position = self._hydrate(symbol, coerce_snapshot(existing))
            for prior in position.executions:
                guard.add(prior)

        trades: list[RoundTripTrade] = []
        ordered = sorted(executions, key=lambda e: as_naive(e.timestamp))

        for execution in ordered:
            if not guard.admit(execution):
                self.duplicates_skipped += 1
                logger.debug(
                    "[RECONSTRUCT] %s: duplicate execution skipped (row %s, %s)",
                    symbol, execution.row_index, execution_identity(execution),
                )
                continue

            pending: Optional[ExecutionRecord] = execution
            while pending is not None:
                if position is None:
                    position = Position(
                        symbol=symbol,
                        side="long" if pending.side == "buy" else "short",
                        instrument=pending.instrument,
                        broker=pending.broker,
                    )
                pending = position.apply(pending)
                if position.is_flat:
                    trades.append(self._close(position))
                    position = None

        if position is not None:
            if position.is_existing_position and position.new_executions == 0:
                logger.debug("[RECONSTRUCT] %s: stored open position unchanged", symbol)
            else:
                trades.append(self._snapshot(position))

        closed = sum(1 for t in trades if not t.is_open)
        logger.info(
            "[RECONSTRUCT] %s: %d closed, %d open, %d duplicates skipped",
            symbol, closed, len(trades) - closed, self.duplicates_skipped,
        )
        return trades

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _hydrate(self, symbol: str, snapshot: PositionSnapshot) -> Position:
        instrument = snapshot.instrument()
        multiplier = instrument.multiplier or 1
        prior = snapshot.execution_records()
        opened_at = as_naive(snapshot.entry_time) if snapshot.entry_time else None
        if prior:
            first = min(e.timestamp for e in prior)
            opened_at = first if opened_at is None else min(opened_at, first)
        return Position(
            symbol=symbol,
            side=snapshot.side,
            instrument=instrument,
            broker=snapshot.broker or "generic",
            quantity=normalize_quantity(snapshot.signed_quantity),
            entry_value=snapshot.quantity * snapshot.entry_price * multiplier,
            entry_quantity=normalize_quantity(snapshot.quantity),
            commission=snapshot.commission,
            fees=snapshot.fees,
            executions=prior,
            opened_at=opened_at,
            originating_trade_id=snapshot.id,
            is_existing_position=True,
        )

    def _times(self, position: Position) -> tuple[datetime, datetime]:
        stamps = [as_naive(e.timestamp) for e in position.executions]
        if position.opened_at is not None:
            stamps.append(position.opened_at)
        return min(stamps), max(stamps)

    def _close(self, position: Position) -> RoundTripTrade:
        mult = position.multiplier
        entry_price = position.entry_value / (position.entry_quantity * mult)
        exit_price = position.exit_value / (position.exit_quantity * mult)
        total_fees = position.commission + position.fees
        if position.side == "long":
            pnl = position.exit_value - position.entry_value - total_fees
        else:
            pnl = position.entry_value - position.exit_value - total_fees
        pnl_percent = pnl / position.entry_value * 100 if position.entry_value else 0.0
        entry_time, exit_time = self._times(position)

        return RoundTripTrade(
            symbol=position.symbol,
            side=position.side,
            entry_time=entry_time,
            exit_time=exit_time,
            quantity=position.entry_quantity,
            entry_price=entry_price,
            exit_price=exit_price,
            pnl=round(pnl, 6),
            pnl_percent=round(pnl_percent, 6),
            commission=round(position.commission, 6),
            fees=round(position.fees, 6),
            entry_value=position.entry_value,
            exit_value=position.exit_value,
            executions=list(position.executions),
            is_update=position.is_existing_position,
            source_trade_id=position.originating_trade_id,
            broker=position.broker,
            instrument=position.instrument,
        )

    def _snapshot(self, position: Position) -> RoundTripTrade:
        """Open-position snapshot; quantity is the net remaining exposure."""
        entry_time, _ = self._times(position)
        entry_price = position.entry_value / (position.entry_quantity * position.multiplier)
        return RoundTripTrade(
            symbol=position.symbol,
            side=position.side,
            entry_time=entry_time,
            exit_time=None,
            quantity=abs(position.quantity),
            entry_price=entry_price,
            exit_price=None,
            pnl=None,
            pnl_percent=None,
            commission=round(position.commission, 6),
            fees=round(position.fees, 6),
            entry_value=position.entry_value,
            exit_value=position.exit_value,
            executions=list(position.executions),
            is_update=position.is_existing_position,
            source_trade_id=position.originating_trade_id,
            broker=position.broker,
            instrument=position.instrument,
        )
