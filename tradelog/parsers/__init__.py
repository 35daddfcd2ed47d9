from .format_detector import BROKER_FORMATS, detect_format, find_header_line
from .row_normalizer import RowNormalizer, resolve_side, side_from_text, parse_number, parse_timestamp
from .brokers import NORMALIZERS, get_normalizer, supported_brokers
from .instrument_classifier import decode_instrument, canonical_symbol, parse_occ_symbol, parse_futures_symbol
from .execution_parser import ExecutionParser, ParseResult, parse_executions
