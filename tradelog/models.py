"""Canonical records shared by the parsers, the reconstructor and the importer."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

# Net positions are compared against exact zero after rounding to this many
# decimal places so fractional-share sums do not leave float residue.
QUANTITY_PRECISION = 8


def normalize_quantity(value: float) -> float:
    """Round a quantity and collapse integral floats to int."""
    rounded = round(float(value), QUANTITY_PRECISION)
    if rounded == int(rounded):
        return int(rounded)
    return rounded


def as_naive(value: datetime) -> datetime:
    """Drop tzinfo (after converting to UTC) so stored and parsed times compare."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_naive(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_naive(datetime.fromisoformat(text))


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


# ---------------------------------------------------------------------------
# Instruments
# ---------------------------------------------------------------------------

@dataclass
class InstrumentDescriptor:
    """Decoded instrument behind a broker symbol code."""

    instrument_type: str = "stock"  # "stock" | "option" | "future"
    underlying: str = ""
    strike: Optional[float] = None
    expiration: Optional[date] = None
    option_type: Optional[str] = None  # "call" | "put"
    multiplier: float = 1

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["expiration"] = self.expiration.isoformat() if self.expiration else None
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "InstrumentDescriptor":
        if not data:
            return cls()
        return cls(
            instrument_type=data.get("instrument_type") or data.get("instrumentType") or "stock",
            underlying=data.get("underlying") or data.get("underlying_symbol") or "",
            strike=float(data["strike"]) if data.get("strike") is not None else None,
            expiration=_parse_date(data.get("expiration") or data.get("expiration_date")),
            option_type=data.get("option_type") or data.get("optionType"),
            multiplier=data.get("multiplier") or data.get("contract_size") or 1,
        )


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------

@dataclass
class ExecutionRecord:
    """A single broker fill, normalized."""

    symbol: str
    side: str  # "buy" | "sell"
    quantity: float
    price: float
    timestamp: datetime
    commission: float = 0.0
    fees: float = 0.0
    broker: str = "generic"
    external_id: Optional[str] = None
    instrument_code: str = ""
    instrument: InstrumentDescriptor = field(default_factory=InstrumentDescriptor)
    currency: str = "USD"
    row_index: Optional[int] = None
    # Identity of the fill this record was carved out of when a single fill
    # crossed through flat and had to be split across two trades.
    split_from: Optional[tuple] = None

    @property
    def signed_quantity(self) -> float:
        return self.quantity if self.side == "buy" else -self.quantity

    @property
    def total_fees(self) -> float:
        return self.commission + self.fees

    @property
    def multiplier(self) -> float:
        return self.instrument.multiplier or 1

    @property
    def notional(self) -> float:
        return self.quantity * self.price * self.multiplier

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "price": self.price,
            "timestamp": self.timestamp.isoformat(),
            "commission": self.commission,
            "fees": self.fees,
            "broker": self.broker,
            "external_id": self.external_id,
            "instrument_code": self.instrument_code,
            "instrument": self.instrument.to_dict(),
            "currency": self.currency,
            "split_from": list(self.split_from) if self.split_from else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], symbol: str = "") -> "ExecutionRecord":
        """Rebuild an execution from a stored trade's execution list.

        Stored lists come from older imports as well, so both snake_case and
        camelCase keys are accepted.
        """
        ts = _parse_timestamp(
            data.get("timestamp") or data.get("datetime") or data.get("entry_time")
        )
        if ts is None:
            raise ValueError("stored execution has no timestamp")
        side = str(data.get("side") or data.get("action") or "buy").lower()
        if side in ("long", "bought"):
            side = "buy"
        elif side in ("short", "sold"):
            side = "sell"
        external_id = data.get("external_id") or data.get("externalId") or data.get("orderId")
        return cls(
            symbol=data.get("symbol") or symbol,
            side=side,
            quantity=normalize_quantity(abs(float(data.get("quantity") or 0))),
            price=float(data.get("price") or 0),
            timestamp=ts,
            commission=float(data.get("commission") or 0),
            fees=float(data.get("fees") or 0),
            broker=data.get("broker") or "generic",
            external_id=str(external_id) if external_id else None,
            instrument_code=data.get("instrument_code") or "",
            instrument=InstrumentDescriptor.from_dict(data.get("instrument")),
            currency=data.get("currency") or "USD",
            split_from=tuple(data["split_from"]) if data.get("split_from") else None,
        )


@dataclass
class RowFailure:
    """A row the normalizer rejected."""

    row_index: int
    broker: str
    reason: str
    symbol: Optional[str] = None


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------

@dataclass
class RoundTripTrade:
    """A position opened and fully closed, or the trailing open remainder."""

    symbol: str
    side: str  # "long" | "short"
    entry_time: datetime
    exit_time: Optional[datetime]
    quantity: float
    entry_price: float
    exit_price: Optional[float]
    pnl: Optional[float]
    pnl_percent: Optional[float]
    commission: float
    fees: float
    entry_value: float
    exit_value: float
    executions: list[ExecutionRecord] = field(default_factory=list)
    is_update: bool = False
    source_trade_id: Optional[str] = None
    broker: str = "generic"
    instrument: InstrumentDescriptor = field(default_factory=InstrumentDescriptor)

    @property
    def is_open(self) -> bool:
        return self.exit_time is None

    @property
    def total_fees(self) -> float:
        return self.commission + self.fees

    def to_dict(self) -> dict[str, Any]:
        """Row shape handed to the persistence layer (insert or update)."""
        return {
            "symbol": self.symbol,
            "side": self.side,
            "entry_time": self.entry_time.isoformat(),
            "exit_time": self.exit_time.isoformat() if self.exit_time else None,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "pnl": self.pnl,
            "pnl_percent": self.pnl_percent,
            "commission": self.commission,
            "fees": self.fees,
            "broker": self.broker,
            "is_open": self.is_open,
            "is_update": self.is_update,
            "existing_trade_id": self.source_trade_id,
            "instrument_type": self.instrument.instrument_type,
            "underlying_symbol": self.instrument.underlying or None,
            "strike_price": self.instrument.strike,
            "expiration_date": (
                self.instrument.expiration.isoformat() if self.instrument.expiration else None
            ),
            "option_type": self.instrument.option_type,
            "contract_size": self.instrument.multiplier,
            "executions": [e.to_dict() for e in self.executions],
        }


@dataclass
class ImportResult:
    """Everything one import run produced."""

    trades: list[RoundTripTrade] = field(default_factory=list)
    unresolved_cusips: list[str] = field(default_factory=list)
    broker: str = "generic"
    failures: list[RowFailure] = field(default_factory=list)
    total_rows: int = 0
    skipped_rows: int = 0
    duplicates_skipped: int = 0

    @property
    def failed_rows(self) -> int:
        return len(self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trades": [t.to_dict() for t in self.trades],
            "unresolved_cusips": list(self.unresolved_cusips),
            "broker": self.broker,
            "total_rows": self.total_rows,
            "skipped_rows": self.skipped_rows,
            "duplicates_skipped": self.duplicates_skipped,
            "failed_rows": self.failed_rows,
            "failures": [asdict(f) for f in self.failures],
        }
