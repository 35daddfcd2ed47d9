from .identifiers import is_cusip, is_ticker_shaped, normalize_ticker, pick_ticker
from .cache import NO_EXPIRY, MemoryCache, SupabaseCache, cusip_cache_key
from .queue import MemoryQueueStore, QueueStore, ResolutionQueueItem, SupabaseQueueStore, backoff_seconds
from .providers import ChainedProvider, OpenFigiProvider, YFinanceProvider
from .inference import AnthropicInference
from .trade_store import InMemoryTradeStore, SupabaseTradeStore
from .worker import ResolutionWorker, SweepResult
from .symbol_resolver import Resolution, SymbolResolver, build_default_resolver
