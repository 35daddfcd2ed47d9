"""Supabase client shared by the durable cache and queue stores.

Reads connection info from environment:
    SUPABASE_URL          – project URL (e.g. https://xxx.supabase.co)
    SUPABASE_SERVICE_KEY  – service_role key (bypasses RLS)

If either is missing, ``get_client`` returns None and callers fall back to
the in-memory stores, so imports still work in local dev without Supabase.
"""

from __future__ import annotations

import logging
import os
import threading

logger = logging.getLogger(__name__)

CACHE_TABLE = "resolution_cache"
QUEUE_TABLE = "cusip_lookup_queue"

_client = None
_initialized = False
_lock = threading.Lock()


def get_client():
    """Lazy-init Supabase client. Returns None if env vars are missing."""
    global _client, _initialized

    with _lock:
        if _initialized:
            return _client

        _initialized = True

        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            logger.info(
                "Supabase not configured (SUPABASE_URL / SUPABASE_SERVICE_KEY missing). "
                "CUSIP cache and retry queue will be kept in memory."
            )
            return None

        try:
            from supabase import create_client
            _client = create_client(url, key)
            logger.info("Supabase client initialized for %s", url)
        except Exception:
            logger.exception("Failed to initialize Supabase client")
            _client = None

        return _client


def reset_client() -> None:
    """Forget the cached client so the next call re-reads the environment."""
    global _client, _initialized
    with _lock:
        _client = None
        _initialized = False
