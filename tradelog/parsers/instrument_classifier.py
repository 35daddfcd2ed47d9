"""
Instrument decoding for broker symbol codes.

Recognized layouts (checked in this order):
1. OCC option symbols        - AAPL  240119C00150000, AAPL240119C00150000
2. Dotted option symbols     - .AAPL240119C150
3. Readable option strings   - AAPL 19 JAN 24 150 C, AAPL 01/19/2024 150.00 P
4. Futures contract codes    - ESM4, NQU24, MESZ5 (month-code table)
5. Everything else           - stock, multiplier 1

Options always carry a 100 multiplier. Futures carry the contract point
value so that price differences convert to dollars.
"""

from __future__ import annotations

import calendar
import re
from datetime import date, timedelta
from typing import Optional

from ..models import InstrumentDescriptor

OPTION_MULTIPLIER = 100

# ---------------------------------------------------------------------------
# Futures reference data
# ---------------------------------------------------------------------------

FUTURES_MONTH_CODES: dict[str, int] = {
    "F": 1, "G": 2, "H": 3, "J": 4, "K": 5, "M": 6,
    "N": 7, "Q": 8, "U": 9, "V": 10, "X": 11, "Z": 12,
}

# Dollar value of a one-point move per contract
FUTURES_POINT_VALUES: dict[str, float] = {
    # Equity index
    "ES": 50, "NQ": 20, "YM": 5, "RTY": 50,
    "MES": 5, "MNQ": 2, "MYM": 0.5, "M2K": 5,
    # Energy
    "CL": 1000, "NG": 10000, "QG": 2500, "MCL": 100,
    # Metals
    "GC": 100, "SI": 5000, "HG": 12500, "MGC": 10,
    # Rates
    "ZB": 1000, "ZN": 1000, "ZF": 1000, "ZT": 2000,
}
DEFAULT_FUTURES_POINT_VALUE = 50

_FUTURES_RE = re.compile(r"^/?([A-Z][A-Z0-9]{0,3}?)([FGHJKMNQUVXZ])(\d{1,2})$")

# ---------------------------------------------------------------------------
# Option patterns (compiled once)
# ---------------------------------------------------------------------------

_OCC_RE = re.compile(r"^([A-Z][A-Z0-9.]{0,5})\s*(\d{6})([CP])(\d{8})$")
_DOTTED_RE = re.compile(r"^\.([A-Z][A-Z0-9]{0,5})(\d{6})([CP])(\d+(?:\.\d+)?)$")
_SPACED_RE = re.compile(
    r"^([A-Z][A-Z0-9.]{0,5})\s+(\d{1,2})\s+([A-Z]{3})\s+(\d{2}|\d{4})\s+"
    r"(\d+(?:\.\d+)?)\s+(C|P|CALL|PUT)$"
)
_SLASHED_RE = re.compile(
    r"^([A-Z][A-Z0-9.]{0,5})\s+(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})\s+"
    r"\$?(\d+(?:\.\d+)?)\s+(C|P|CALL|PUT)$"
)

_MONTHS = {name.upper(): i for i, name in enumerate(calendar.month_abbr) if name}


def _option_type(flag: str) -> str:
    return "call" if flag.upper().startswith("C") else "put"


def _full_year(two_or_four: str) -> int:
    year = int(two_or_four)
    return year + 2000 if year < 100 else year


def parse_occ_symbol(code: str) -> Optional[InstrumentDescriptor]:
    """Decode an OCC option symbol (padded or compact)."""
    m = _OCC_RE.match(code.strip().upper())
    if not m:
        return None
    underlying, yymmdd, flag, strike_raw = m.groups()
    try:
        expiration = date(2000 + int(yymmdd[:2]), int(yymmdd[2:4]), int(yymmdd[4:]))
    except ValueError:
        return None
    return InstrumentDescriptor(
        instrument_type="option",
        underlying=underlying,
        strike=int(strike_raw) / 1000,
        expiration=expiration,
        option_type=_option_type(flag),
        multiplier=OPTION_MULTIPLIER,
    )


def parse_option_description(code: str) -> Optional[InstrumentDescriptor]:
    """Decode dotted and human-readable option strings."""
    text = " ".join(code.strip().upper().split())

    m = _DOTTED_RE.match(text)
    if m:
        underlying, yymmdd, flag, strike = m.groups()
        try:
            expiration = date(2000 + int(yymmdd[:2]), int(yymmdd[2:4]), int(yymmdd[4:]))
        except ValueError:
            return None
        return option_descriptor(underlying, expiration, float(strike), flag)

    m = _SPACED_RE.match(text)
    if m:
        underlying, day, mon, year, strike, flag = m.groups()
        if mon not in _MONTHS:
            return None
        try:
            expiration = date(_full_year(year), _MONTHS[mon], int(day))
        except ValueError:
            return None
        return option_descriptor(underlying, expiration, float(strike), flag)

    m = _SLASHED_RE.match(text)
    if m:
        underlying, month, day, year, strike, flag = m.groups()
        try:
            expiration = date(_full_year(year), int(month), int(day))
        except ValueError:
            return None
        return option_descriptor(underlying, expiration, float(strike), flag)

    return None


def option_descriptor(
    underlying: str, expiration: date, strike: float, flag: str
) -> InstrumentDescriptor:
    return InstrumentDescriptor(
        instrument_type="option",
        underlying=underlying.upper(),
        strike=strike,
        expiration=expiration,
        option_type=_option_type(flag),
        multiplier=OPTION_MULTIPLIER,
    )


def third_friday(year: int, month: int) -> date:
    first = date(year, month, 1)
    offset = (calendar.FRIDAY - first.weekday()) % 7
    return first + timedelta(days=offset + 14)


def parse_futures_symbol(
    code: str, trade_date: Optional[date] = None
) -> Optional[InstrumentDescriptor]:
    """Decode a futures contract code such as ESM4 or MNQU24.

    Single-digit years are placed in the decade of ``trade_date`` (or
    today), rolling forward when that would put the contract more than a
    year in the past. Expiration is approximated as the third Friday of
    the contract month.
    """
    m = _FUTURES_RE.match(code.strip().upper())
    if not m:
        return None
    root, month_code, year_digits = m.groups()
    if root not in FUTURES_POINT_VALUES and len(root) < 2:
        return None

    ref = trade_date or date.today()
    if len(year_digits) == 2:
        year = 2000 + int(year_digits)
    else:
        year = ref.year - ref.year % 10 + int(year_digits)
        if year < ref.year - 1:
            year += 10

    return InstrumentDescriptor(
        instrument_type="future",
        underlying=root,
        strike=None,
        expiration=third_friday(year, FUTURES_MONTH_CODES[month_code]),
        option_type=None,
        multiplier=FUTURES_POINT_VALUES.get(root, DEFAULT_FUTURES_POINT_VALUE),
    )


def occ_symbol(instrument: InstrumentDescriptor) -> str:
    """Compact OCC symbol for an option descriptor."""
    if instrument.expiration is None or instrument.strike is None:
        raise ValueError(f"option descriptor for {instrument.underlying!r} needs an expiration and a strike")
    flag = "C" if instrument.option_type == "call" else "P"
    return (
        f"{instrument.underlying}{instrument.expiration.strftime('%y%m%d')}"
        f"{flag}{int(round(instrument.strike * 1000)):08d}"
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def decode_instrument(
    code: str,
    trade_date: Optional[date] = None,
    futures_hint: bool = False,
) -> InstrumentDescriptor:
    """Decode a broker symbol code into an InstrumentDescriptor.

    Futures codes are only tried for known contract roots unless the
    caller knows the file contains futures (``futures_hint``), since short
    stock tickers like "GM" followed by digits are otherwise ambiguous.
    """
    raw = (code or "").strip().upper()

    option = parse_occ_symbol(raw) or parse_option_description(raw)
    if option is not None:
        return option

    m = _FUTURES_RE.match(raw)
    if m and (futures_hint or m.group(1) in FUTURES_POINT_VALUES):
        future = parse_futures_symbol(raw, trade_date)
        if future is not None:
            return future

    return InstrumentDescriptor(instrument_type="stock", underlying=raw, multiplier=1)


def canonical_symbol(code: str, instrument: InstrumentDescriptor) -> str:
    """Symbol used to group executions: compact OCC for options, else the code."""
    if instrument.instrument_type == "option" and instrument.expiration and instrument.strike:
        return occ_symbol(instrument)
    return " ".join((code or "").strip().upper().split())
