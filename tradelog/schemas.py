"""Boundary models for data handed in by the persistence layer."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from .models import ExecutionRecord, InstrumentDescriptor


class PositionSnapshot(BaseModel):
    """A stored trade that is still open, used to seed reconstruction."""

    id: str
    symbol: str
    side: Literal["long", "short"]
    quantity: float = Field(gt=0)
    entry_price: float = Field(gt=0)
    entry_time: Optional[datetime] = None
    commission: float = 0.0
    fees: float = 0.0
    broker: Optional[str] = None
    instrument_type: str = "stock"
    strike_price: Optional[float] = None
    expiration_date: Optional[str] = None
    option_type: Optional[str] = None
    multiplier: float = Field(default=1, gt=0)
    executions: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def signed_quantity(self) -> float:
        return self.quantity if self.side == "long" else -self.quantity

    def instrument(self) -> InstrumentDescriptor:
        return InstrumentDescriptor.from_dict({
            "instrument_type": self.instrument_type,
            "underlying": self.symbol if self.instrument_type == "stock" else "",
            "strike": self.strike_price,
            "expiration": self.expiration_date,
            "option_type": self.option_type,
            "multiplier": self.multiplier,
        })

    def execution_records(self) -> list[ExecutionRecord]:
        instrument = self.instrument()
        records = []
        for raw in self.executions:
            rec = ExecutionRecord.from_dict(raw, symbol=self.symbol)
            rec.instrument = instrument
            records.append(rec)
        return records


def coerce_snapshot(value: PositionSnapshot | dict[str, Any]) -> PositionSnapshot:
    """Accept either a validated snapshot or the raw stored row."""
    if isinstance(value, PositionSnapshot):
        return value
    return PositionSnapshot.model_validate(value)
