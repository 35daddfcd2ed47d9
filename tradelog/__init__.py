"""tradelog: broker trade-log import, round-trip reconstruction and CUSIP resolution."""

from .errors import (
    ExhaustedRetryError,
    FormatError,
    ImportTimeoutError,
    ResolutionError,
    RowError,
    TradelogError,
)
from .importer import TradeImporter
from .models import ExecutionRecord, ImportResult, InstrumentDescriptor, RoundTripTrade
from .schemas import PositionSnapshot

__version__ = "0.1.0"
