"""CUSIP and ticker shape checks."""

from __future__ import annotations

import re
from typing import Any, Iterable, Optional

CUSIP_RE = re.compile(r"^[0-9A-Z]{8}[0-9]$")
TICKER_RE = re.compile(r"^[A-Z0-9.-]{1,10}$")

_CUSIP_SPECIALS = {"*": 36, "@": 37, "#": 38}


def cusip_check_digit(base: str) -> int:
    """Check digit for the first eight characters of a CUSIP."""
    total = 0
    for i, ch in enumerate(base.upper()[:8]):
        if ch.isdigit():
            value = int(ch)
        elif ch.isalpha():
            value = ord(ch) - ord("A") + 10
        else:
            value = _CUSIP_SPECIALS.get(ch, 0)
        if i % 2 == 1:
            value *= 2
        total += value // 10 + value % 10
    return (10 - total % 10) % 10


def is_cusip(value: Optional[str], validate_checksum: bool = True) -> bool:
    """True for a 9-character CUSIP (8 alphanumerics + check digit)."""
    if not value:
        return False
    text = value.strip().upper()
    if not CUSIP_RE.match(text):
        return False
    # All-digit 9-char strings that fail the checksum are usually account
    # or order numbers, not securities.
    if validate_checksum:
        return cusip_check_digit(text[:8]) == int(text[8])
    return True


def is_ticker_shaped(value: Optional[str]) -> bool:
    if not value:
        return False
    text = value.strip().upper()
    if not TICKER_RE.match(text):
        return False
    if not any(c.isalpha() for c in text):
        return False
    return not is_cusip(text)


def normalize_ticker(value: Any, identifier: Optional[str] = None) -> Optional[str]:
    """Clean a candidate ticker; None unless the whole value is ticker-shaped.

    Only surrounding whitespace, quotes and one trailing period are removed,
    so prose such as "The ticker is AAPL" is rejected rather than truncated.
    """
    if not value:
        return None
    text = str(value).strip().strip("`'\"").strip().upper()
    if text.endswith("."):
        text = text[:-1]
    if identifier and text == identifier.upper():
        return None
    if text in ("UNKNOWN", "NONE", "N/A", "NULL"):
        return None
    return text if is_ticker_shaped(text) else None


def pick_ticker(results: Iterable[dict[str, Any]], identifier: str) -> Optional[str]:
    """Choose the ticker from a symbol-search result set.

    An entry whose identifier equals the query wins; otherwise the first
    entry with a ticker-shaped symbol.
    """
    results = [r for r in (results or []) if isinstance(r, dict)]
    target = identifier.upper()
    for r in results:
        ident = str(r.get("identifier") or r.get("cusip") or "").upper()
        if ident == target:
            ticker = normalize_ticker(r.get("symbol"), identifier)
            if ticker:
                return ticker
    for r in results:
        ticker = normalize_ticker(r.get("symbol"), identifier)
        if ticker:
            return ticker
    return None
