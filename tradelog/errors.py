"""Error taxonomy for trade import and symbol resolution.

Only FormatError and ImportTimeoutError fail an import. RowError and the
resolution errors are recovered where they occur and aggregated into the
result so the caller can report them.
"""

from __future__ import annotations


class TradelogError(Exception):
    """Base class for all tradelog errors."""


class FormatError(TradelogError):
    """The uploaded file has no recognizable tabular structure."""

    def __init__(self, message: str, broker: str | None = None):
        super().__init__(message)
        self.broker = broker


class RowError(TradelogError):
    """A single row could not be normalized into an execution."""

    def __init__(
        self,
        message: str,
        row_index: int | None = None,
        broker: str | None = None,
        symbol: str | None = None,
    ):
        super().__init__(message)
        self.row_index = row_index
        self.broker = broker
        self.symbol = symbol

    def __str__(self) -> str:
        base = super().__str__()
        parts = []
        if self.broker:
            parts.append(f"broker={self.broker}")
        if self.row_index is not None:
            parts.append(f"row={self.row_index}")
        if self.symbol:
            parts.append(f"symbol={self.symbol}")
        return f"{base} ({', '.join(parts)})" if parts else base


class ResolutionError(TradelogError):
    """A transient failure while looking up an identifier."""

    def __init__(self, message: str, identifier: str | None = None):
        super().__init__(message)
        self.identifier = identifier


class ExhaustedRetryError(ResolutionError):
    """An identifier stayed unresolved after the maximum number of attempts."""

    def __init__(self, identifier: str, attempts: int, last_error: str | None = None):
        super().__init__(
            f"{identifier} unresolved after {attempts} attempts"
            + (f": {last_error}" if last_error else ""),
            identifier=identifier,
        )
        self.attempts = attempts
        self.last_error = last_error


class ImportTimeoutError(TradelogError):
    """An import job ran past its watchdog window."""

    def __init__(self, job_id: str, timeout_sec: float):
        super().__init__(f"import job {job_id} exceeded {timeout_sec:.0f}s")
        self.job_id = job_id
        self.timeout_sec = timeout_sec
