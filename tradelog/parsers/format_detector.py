"""Format detection for uploaded broker execution exports.

Looks at the first few non-empty lines of the upload for a header row and
matches its column names against fixed per-broker signatures. Signatures
are checked most-specific first so that a file carrying both a generic
"Symbol,Quantity,Price" layout and a broker-only column is attributed to
the broker. Anything unrecognized is "generic".
"""

from __future__ import annotations

import csv
import logging

logger = logging.getLogger(__name__)

BROKER_FORMATS: tuple[str, ...] = (
    "tradovate",
    "lightspeed",
    "thinkorswim",
    "ibkr",
    "etrade",
    "schwab",
    "generic",
)

MAX_HEADER_LINES = 10

# Each broker maps to alternative signatures. A signature is a pair of
# (every one of these columns, at least one of these columns); an empty
# second set means no any-of requirement.
_SIGNATURES: list[tuple[str, list[tuple[frozenset[str], frozenset[str]]]]] = [
    ("tradovate", [
        (frozenset({"b/s", "contract"}), frozenset({"fill time", "avgprice", "avg fill price"})),
    ]),
    ("lightspeed", [
        (frozenset({"trade number", "security type"}), frozenset()),
        (frozenset({"cusip", "commission amount"}), frozenset()),
        (frozenset({"feesec"}), frozenset()),
    ]),
    ("thinkorswim", [
        (frozenset({"exec time"}), frozenset({"pos effect", "spread"})),
    ]),
    ("ibkr", [
        (frozenset(), frozenset({"ibexecid", "tradeid", "date/time"})),
    ]),
    ("etrade", [
        (frozenset({"transaction date", "transaction type", "security type"}), frozenset()),
    ]),
    ("schwab", [
        (frozenset({"action", "symbol", "fees & comm"}), frozenset()),
    ]),
]

# IBKR needs a price column on top of its id/date column
_IBKR_PRICE_COLUMNS = frozenset({"t. price", "tradeprice"})

# Columns a generic execution header is expected to carry
_GENERIC_HEADER_HINTS = frozenset({"symbol", "ticker", "quantity", "qty", "price", "side", "action"})


def decode_content(content: bytes | str) -> str:
    """Decode an upload, tolerating a BOM and non-UTF-8 exports."""
    if isinstance(content, str):
        return content.lstrip("\ufeff")
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def split_header(line: str) -> list[str]:
    """Split one header line into lowercase column names."""
    delimiter = "\t" if "\t" in line and "," not in line else ","
    try:
        cells = next(csv.reader([line], delimiter=delimiter))
    except (csv.Error, StopIteration):
        cells = line.split(delimiter)
    return [c.strip().strip('"').lower() for c in cells]


def _matches(columns: set[str], fmt: str) -> bool:
    for name, alternatives in _SIGNATURES:
        if name != fmt:
            continue
        for required, any_of in alternatives:
            if not required.issubset(columns):
                continue
            if any_of and not (any_of & columns):
                continue
            if fmt == "ibkr" and not (_IBKR_PRICE_COLUMNS & columns):
                continue
            return True
    return False


def _classify_line(line: str) -> str | None:
    columns = set(split_header(line))
    for fmt, _ in _SIGNATURES:
        if _matches(columns, fmt):
            return fmt
    return None


def detect_format(content: bytes | str) -> str:
    """Return the broker tag for an upload, or "generic".

    Never raises: a buffer that cannot be inspected is treated as generic
    and left for the parser to reject.
    """
    try:
        text = decode_content(content)
        lines = [ln for ln in text.splitlines() if ln.strip()][:MAX_HEADER_LINES]
        # Most specific format wins across all inspected lines, not just
        # the first line that matches anything.
        found = {fmt for fmt in (_classify_line(ln) for ln in lines) if fmt}
        for fmt in BROKER_FORMATS:
            if fmt in found:
                logger.info("[IMPORT] Detected format: %s", fmt)
                return fmt
    except Exception:
        logger.debug("Format detection failed, using generic", exc_info=True)
    return "generic"


def find_header_line(lines: list[str], fmt: str) -> int | None:
    """Index of the header row for ``fmt`` in ``lines``.

    Title rows and statement preambles before the header are skipped. For
    the generic format the first line that looks like an execution header
    is used, falling back to the first non-empty line.
    """
    first_non_empty = None
    for i, line in enumerate(lines):
        if not line.strip():
            continue
        if first_non_empty is None:
            first_non_empty = i
        columns = set(split_header(line))
        if fmt == "generic":
            if len(_GENERIC_HEADER_HINTS & columns) >= 2:
                return i
        elif _matches(columns, fmt):
            return i
    if fmt == "generic":
        return first_non_empty
    return None
