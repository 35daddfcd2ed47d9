"""
Broker export parser: raw upload bytes -> normalized executions.

Handles:
- Encoding (UTF-8 with or without BOM, latin-1 fallback)
- Title rows and statement preambles before the real header
- Tab-delimited Schwab exports
- thinkorswim statements, where the trade history is one section among many
- IBKR activity statements, where every section shares one CSV file
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field

import pandas as pd

from ..errors import FormatError, RowError
from ..models import ExecutionRecord, RowFailure
from .brokers import get_normalizer
from .format_detector import BROKER_FORMATS, decode_content, detect_format, find_header_line

logger = logging.getLogger(__name__)


@dataclass
class ParseResult:
    """Output of one parse: executions plus row bookkeeping."""

    broker: str
    executions: list[ExecutionRecord] = field(default_factory=list)
    failures: list[RowFailure] = field(default_factory=list)
    total_rows: int = 0
    skipped_rows: int = 0


def _delimiter_for(header_line: str) -> str:
    if "\t" in header_line and "," not in header_line:
        return "\t"
    return ","


def _first_cell(line: str, delimiter: str) -> str:
    return line.split(delimiter, 1)[0].strip().strip('"')


class ExecutionParser:
    """
    Parse a broker export into ExecutionRecords.

    Usage:
        parser = ExecutionParser()
        result = parser.parse(raw_bytes)              # auto-detect
        result = parser.parse(raw_bytes, "schwab")    # declared format
    """

    def __init__(self) -> None:
        self._bad_lines = 0

    def parse(self, content: bytes | str, broker: str = "auto") -> ParseResult:
        text = decode_content(content)
        if not text.strip():
            raise FormatError("empty file", broker=None if broker == "auto" else broker)

        fmt = detect_format(text) if broker in (None, "", "auto") else broker.lower()
        if fmt not in BROKER_FORMATS:
            raise FormatError(f"unsupported format {broker!r}", broker=broker)

        lines = text.splitlines()
        header_idx = find_header_line(lines, fmt)
        if header_idx is None:
            raise FormatError(f"no {fmt} header row found", broker=fmt)

        table = self._extract_table(lines, header_idx, fmt)
        frame = self._read_table(table, fmt)
        return self._normalize_frame(frame, fmt, header_idx)

    # ------------------------------------------------------------------

    def _extract_table(self, lines: list[str], header_idx: int, fmt: str) -> list[str]:
        header = lines[header_idx]
        body = lines[header_idx + 1:]
        delimiter = _delimiter_for(header)

        if fmt == "thinkorswim":
            # Trade history ends at the first blank line of the statement
            section = []
            for line in body:
                if not line.strip():
                    break
                section.append(line)
            body = section
        elif fmt == "ibkr":
            prefix = _first_cell(header, delimiter)
            if prefix and prefix.lower() not in ("symbol", "clientaccountid", "accountid"):
                # Activity statement: keep only rows of the same section
                body = [ln for ln in body if _first_cell(ln, delimiter) == prefix]
        return [header] + body

    def _read_table(self, table: list[str], fmt: str) -> pd.DataFrame:
        delimiter = _delimiter_for(table[0])
        self._bad_lines = 0
        table = self._blank_overlong_rows(table, delimiter)

        def on_bad_line(bad: list[str]) -> None:
            self._bad_lines += 1

        try:
            frame = pd.read_csv(
                io.StringIO("\n".join(table)),
                sep=delimiter,
                dtype=str,
                keep_default_na=False,
                index_col=False,
                skipinitialspace=True,
                skip_blank_lines=False,
                engine="python",
                on_bad_lines=on_bad_line,
            )
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            raise FormatError(f"could not read {fmt} table: {e}", broker=fmt) from e

        frame.columns = [str(c).strip() for c in frame.columns]
        return frame.fillna("")

    def _blank_overlong_rows(self, table: list[str], delimiter: str) -> list[str]:
        """Blank out rows carrying values past the header width.

        read_csv would silently cut them to the header width. Blanked rows
        keep their place so row indices still match the upload. Trailing
        empty fields (a dangling delimiter) are harmless and kept.
        """
        width = len(next(csv.reader([table[0]], delimiter=delimiter, skipinitialspace=True), []))
        kept = [table[0]]
        for line in table[1:]:
            fields = next(csv.reader([line], delimiter=delimiter, skipinitialspace=True), [])
            if any(f.strip() for f in fields[width:]):
                self._bad_lines += 1
                kept.append("")
                continue
            kept.append(line)
        return kept

    def _normalize_frame(self, frame: pd.DataFrame, fmt: str, header_idx: int) -> ParseResult:
        normalizer = get_normalizer(fmt)
        normalizer.bind(list(frame.columns))
        result = ParseResult(broker=fmt)

        for i, row in enumerate(frame.to_dict(orient="records")):
            # Line number in the upload; section-relative for IBKR statements
            row_index = header_idx + i + 2
            if not any(str(v).strip() for v in row.values()):
                continue
            result.total_rows += 1
            try:
                record = normalizer.normalize(row, row_index)
            except RowError as e:
                logger.warning("[IMPORT] Skipping malformed row: %s", e)
                result.failures.append(
                    RowFailure(row_index=row_index, broker=fmt, reason=str(e.args[0]), symbol=e.symbol)
                )
                continue
            if record is None:
                result.skipped_rows += 1
                continue
            result.executions.append(record)

        if self._bad_lines:
            logger.warning(
                "[IMPORT] %d %s rows had more fields than the header and were dropped",
                self._bad_lines, fmt,
            )
            result.total_rows += self._bad_lines
            result.failures.append(
                RowFailure(
                    row_index=-1,
                    broker=fmt,
                    reason=f"{self._bad_lines} rows with too many fields",
                )
            )

        logger.info(
            "[IMPORT] Parsed %d executions from %d rows (%s, %d skipped, %d failed)",
            len(result.executions), result.total_rows, fmt,
            result.skipped_rows, len(result.failures),
        )
        return result


def parse_executions(content: bytes | str, broker: str = "auto") -> ParseResult:
    """Convenience wrapper around ExecutionParser.parse."""
    return ExecutionParser().parse(content, broker)
