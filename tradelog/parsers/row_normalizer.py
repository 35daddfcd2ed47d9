"""
Row normalization framework shared by every broker adapter.

Broker exports disagree on almost everything:
- Side can live in an action column, in the sign of the quantity, or in a
  free-text "Buy/Sell" description, and these sometimes contradict
- Money uses "$", thousands separators and parentheses for negatives
- Dates and times are split across columns or glued together in
  broker-specific layouts

Each broker gets a ``RowNormalizer`` subclass that only declares its column
aliases and quirks; the base class applies one fixed pipeline so every
adapter resolves side, quantity, price and fees the same way.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from ..errors import RowError
from ..models import ExecutionRecord, InstrumentDescriptor, normalize_quantity
from .instrument_classifier import canonical_symbol, decode_instrument

# ---------------------------------------------------------------------------
# Number parsing
# ---------------------------------------------------------------------------

_NUMBER_RE = re.compile(
    r"^\s*"
    r"(?P<sign>[-+])?\s*"
    r"(?P<open>\()?\s*"          # opening paren for negative
    r"(?P<sign2>[-+])?\s*"
    r"\$?\s*"
    r"(?P<num>\d[\d,]*\.?\d*|\.\d+)"
    r"\s*(?P<close>\))?"
    r"\s*$"
)


def parse_number(value: Optional[str]) -> Optional[float]:
    """Parse '$1,234.56', '(12.50)', '+100' or '-3' into a float.

    Blank cells return None. Anything else that is not a number raises
    ValueError so the caller can reject the row.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text or text in ("-", "--", "N/A", "n/a"):
        return None
    m = _NUMBER_RE.match(text)
    if not m:
        raise ValueError(f"not a number: {value!r}")
    result = float(m.group("num").replace(",", ""))
    negative = "-" in (m.group("sign") or "", m.group("sign2") or "")
    if m.group("open") or m.group("close"):
        negative = not negative
    return -result if negative else result


def parse_amount(value: Optional[str]) -> float:
    """Like parse_number, but blanks and garbage count as zero."""
    try:
        return parse_number(value) or 0.0
    except ValueError:
        return 0.0


# ---------------------------------------------------------------------------
# Timestamp parsing
# ---------------------------------------------------------------------------

_DATE_FORMATS = [
    "%m/%d/%Y",
    "%m/%d/%y",
    "%Y-%m-%d",
    "%Y%m%d",
    "%m-%d-%Y",
    "%d-%b-%Y",
    "%b %d, %Y",
]

_DATETIME_FORMATS = [
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d, %H:%M:%S",
    "%Y%m%d;%H%M%S",
    "%Y%m%d %H%M%S",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%y %H:%M:%S",
    "%m/%d/%y %H:%M",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S.%f",
]

_TIME_FORMATS = ["%H:%M:%S", "%H:%M", "%I:%M:%S %p", "%I:%M %p", "%H:%M:%S.%f"]

# Schwab writes "01/03/2024 as of 01/02/2024" for back-dated entries
_AS_OF_RE = re.compile(r"\s+as of\s+.*$", re.IGNORECASE)


def parse_timestamp(date_str: str, time_str: str = "") -> Optional[datetime]:
    """Combine a date cell and an optional time cell into a datetime."""
    date_text = _AS_OF_RE.sub("", (date_str or "").strip())
    time_text = (time_str or "").strip()
    if not date_text:
        return None
    if date_text.endswith("Z"):
        date_text = date_text[:-1]

    if time_text:
        combined = f"{date_text} {time_text}"
        for fmt in _DATETIME_FORMATS:
            try:
                return datetime.strptime(combined, fmt)
            except ValueError:
                continue
        day = _parse_date_only(date_text)
        if day is not None:
            for fmt in _TIME_FORMATS:
                try:
                    t = datetime.strptime(time_text, fmt).time()
                    return datetime.combine(day.date(), t)
                except ValueError:
                    continue

    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(date_text, fmt)
        except ValueError:
            continue
    return _parse_date_only(date_text)


def _parse_date_only(text: str) -> Optional[datetime]:
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


# ---------------------------------------------------------------------------
# Side resolution
# ---------------------------------------------------------------------------

_SELL_WORDS = {
    "s", "sell", "sold", "sld", "ss", "short", "sell short", "short sell",
    "sell to open", "sell to close", "sto", "stc",
}
_BUY_WORDS = {
    "b", "buy", "bought", "bot", "long", "buy to open", "buy to close",
    "bto", "btc", "bc", "cover", "buy to cover", "reinvest",
}


def side_from_text(text: Optional[str]) -> Optional[str]:
    """Map a side/action cell to "buy" or "sell"; None when it says neither."""
    if not text:
        return None
    cleaned = " ".join(text.strip().lower().split())
    if not cleaned:
        return None
    if cleaned in _SELL_WORDS:
        return "sell"
    if cleaned in _BUY_WORDS:
        return "buy"
    # Sell words first: "sell short" and "sold" must not fall into buy
    if "sell" in cleaned or "sold" in cleaned or "short" in cleaned:
        return "sell"
    if "buy" in cleaned or "bought" in cleaned or "cover" in cleaned:
        return "buy"
    return None


def resolve_side(
    explicit: Optional[str],
    signed_quantity: Optional[float],
    text: Optional[str],
) -> str:
    """Resolve trade side with one fixed priority for every broker.

    1. explicit side/action column
    2. sign of the quantity (pass None when the quantity carries no sign)
    3. descriptive buy/sell text column
    4. buy
    """
    side = side_from_text(explicit)
    if side:
        return side
    if signed_quantity:
        return "buy" if signed_quantity > 0 else "sell"
    side = side_from_text(text)
    if side:
        return side
    return "buy"


# ---------------------------------------------------------------------------
# Non-trade rows
# ---------------------------------------------------------------------------

_NON_FILLED_STATUSES = ("cancel", "reject", "expired", "working", "pending", "replaced")

_NON_TRADE_ACTIONS = (
    "dividend", "interest", "journal", "transfer", "deposit", "withdrawal",
    "wire", "fee", "tax", "adjustment", "split", "merger", "spin", "ach",
    "credit", "debit", "expir", "assign", "exercis", "cap gain", "gain distribution",
)


def is_non_filled(status: Optional[str]) -> bool:
    if not status:
        return False
    cleaned = status.strip().lower()
    return any(word in cleaned for word in _NON_FILLED_STATUSES)


def is_non_trade_action(action: Optional[str]) -> bool:
    if not action:
        return False
    cleaned = " ".join(action.strip().lower().split())
    if cleaned in _SELL_WORDS or cleaned in _BUY_WORDS:
        return False
    return any(word in cleaned for word in _NON_TRADE_ACTIONS)


# ---------------------------------------------------------------------------
# Column lookup
# ---------------------------------------------------------------------------

def find_column(headers: list[str], *candidates: str) -> Optional[str]:
    """Return the header matching the first candidate.

    Exact (case-insensitive) matches are preferred over substring matches
    so "Price" does not resolve to "Net Price".
    """
    lower = {h.strip().lower(): h for h in headers}
    for candidate in candidates:
        if candidate.lower() in lower:
            return lower[candidate.lower()]
    for candidate in candidates:
        c = candidate.lower()
        for h_lower, h in lower.items():
            if c in h_lower:
                return h
    return None


# ---------------------------------------------------------------------------
# Base normalizer
# ---------------------------------------------------------------------------

class RowNormalizer:
    """Turn one raw CSV row into an ExecutionRecord.

    Subclasses declare ``broker``, ``columns`` (logical name -> header
    aliases) and override the hooks below where their export is odd.
    ``normalize`` returns None for rows that are not fills and raises
    RowError for rows that should be fills but cannot be read.
    """

    broker = "generic"

    # True when the broker's quantity column is signed (+buy / -sell).
    # A negative quantity always means sell regardless of this flag.
    quantity_signed = False

    columns: dict[str, tuple[str, ...]] = {
        "symbol": ("Symbol", "Ticker", "Instrument", "Contract"),
        "side": ("Side", "Action", "B/S", "Buy/Sell"),
        "side_text": ("Description", "Transaction Type", "Type"),
        "quantity": ("Quantity", "Qty", "Shares", "Filled Qty", "Filled"),
        "price": ("Price", "Fill Price", "Avg Price", "Execution Price", "Avg Fill Price"),
        "date": ("Date/Time", "DateTime", "Date", "Trade Date", "Timestamp"),
        "time": ("Time", "Exec Time", "Execution Time"),
        "commission": ("Commission", "Comm", "Commissions"),
        "fees": ("Fees", "Fee", "Reg Fees"),
        "external_id": ("Execution ID", "Exec ID", "Fill ID", "Trade ID", "Order ID"),
        "status": ("Status",),
        "currency": ("Currency",),
        "cusip": ("CUSIP",),
    }

    # Extra per-fill fee columns summed into ``fees``
    fee_columns: tuple[str, ...] = ()

    # Broker only trades futures, so short root+month+year codes are contracts
    futures_only = False

    def __init__(self) -> None:
        self.column_map: dict[str, Optional[str]] = {}
        self.extra_fee_columns: list[str] = []

    def bind(self, headers: list[str]) -> None:
        """Resolve logical columns against the file's actual header row."""
        self.column_map = {
            key: find_column(headers, *aliases) for key, aliases in self.columns.items()
        }
        # Two logical columns must not collapse onto one header via
        # substring matching; the earlier-declared key keeps it.
        seen: set[str] = set()
        for key in self.columns:
            header = self.column_map.get(key)
            if header is None:
                continue
            if header in seen:
                self.column_map[key] = None
            else:
                seen.add(header)
        lower = {h.strip().lower(): h for h in headers}
        self.extra_fee_columns = [lower[c.lower()] for c in self.fee_columns if c.lower() in lower]

    def get(self, row: dict[str, str], key: str) -> str:
        header = self.column_map.get(key)
        if header is None:
            return ""
        value = row.get(header)
        if value is None:
            return ""
        return str(value).strip()

    # -- hooks ------------------------------------------------------------

    def is_non_trade(self, row: dict[str, str]) -> bool:
        if is_non_filled(self.get(row, "status")):
            return True
        return is_non_trade_action(self.get(row, "side"))

    def symbol_code(self, row: dict[str, str]) -> str:
        code = self.get(row, "symbol").upper()
        if not code:
            code = self.get(row, "cusip").upper()
        return code

    def timestamp(self, row: dict[str, str]) -> Optional[datetime]:
        return parse_timestamp(self.get(row, "date"), self.get(row, "time"))

    def instrument(
        self, row: dict[str, str], code: str, when: datetime
    ) -> InstrumentDescriptor:
        return decode_instrument(code, trade_date=when.date(), futures_hint=self.futures_only)

    def external_id(self, row: dict[str, str]) -> Optional[str]:
        value = self.get(row, "external_id")
        return value or None

    # -- pipeline ---------------------------------------------------------

    def _number(self, row: dict[str, str], key: str, row_index: int, symbol: str) -> Optional[float]:
        try:
            return parse_number(self.get(row, key))
        except ValueError as exc:
            raise RowError(f"bad {key}: {exc}", row_index, self.broker, symbol) from exc

    def normalize(self, row: dict[str, str], row_index: int) -> Optional[ExecutionRecord]:
        """Normalize one row; None when the row is not a fill."""
        if self.is_non_trade(row):
            return None

        code = self.symbol_code(row)
        raw_qty = self._number(row, "quantity", row_index, code)
        if raw_qty is None:
            if not self.get(row, "price"):
                # Blank, summary or section-divider row
                return None
            raise RowError("missing quantity", row_index, self.broker, code)
        if raw_qty == 0:
            return None
        if not code:
            raise RowError("missing symbol", row_index, self.broker)

        price = self._number(row, "price", row_index, code)
        if price is None or price <= 0:
            raise RowError(f"invalid price {self.get(row, 'price')!r}", row_index, self.broker, code)

        when = self.timestamp(row)
        if when is None:
            raise RowError("unparseable timestamp", row_index, self.broker, code)

        signed = raw_qty if (self.quantity_signed or raw_qty < 0) else None
        side = resolve_side(self.get(row, "side"), signed, self.get(row, "side_text"))

        commission = abs(parse_amount(self.get(row, "commission")))
        fees = abs(parse_amount(self.get(row, "fees")))
        for header in self.extra_fee_columns:
            fees += abs(parse_amount(row.get(header)))

        instrument = self.instrument(row, code, when)
        return ExecutionRecord(
            symbol=canonical_symbol(code, instrument),
            side=side,
            quantity=normalize_quantity(abs(raw_qty)),
            price=price,
            timestamp=when,
            commission=round(commission, 6),
            fees=round(fees, 6),
            broker=self.broker,
            external_id=self.external_id(row),
            instrument_code=code,
            instrument=instrument,
            currency=(self.get(row, "currency") or "USD").upper(),
            row_index=row_index,
        )
