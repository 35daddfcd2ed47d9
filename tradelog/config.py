"""Runtime configuration for the trade import pipeline.

Values come from the environment so the same code runs in local dev
(no credentials, in-memory stores) and in a deployed worker. Every
component also accepts explicit overrides in its constructor.

    TRADELOG_CUSIP_CACHE_TTL_DAYS          – CUSIP cache lifetime (default 7)
    TRADELOG_QUEUE_INTERVAL_SEC            – resolution worker sweep interval
    TRADELOG_QUEUE_BATCH_SIZE              – items claimed per sweep
    TRADELOG_QUEUE_MAX_ATTEMPTS            – attempts before an item is failed
    TRADELOG_QUEUE_VISIBILITY_TIMEOUT_SEC  – stale "processing" claim window
    TRADELOG_IMPORT_TIMEOUT_SEC            – import job watchdog
    TRADELOG_IMPORT_WORKERS                – import job thread pool size
    TRADELOG_INFERENCE_MODEL               – model used for ticker inference
    TRADELOG_LOG_LEVEL                     – root log level
"""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return int(default)
    try:
        return int(float(str(raw).strip()))
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return float(default)
    try:
        return float(str(raw).strip())
    except ValueError:
        return float(default)


# ---------------------------------------------------------------------------
# CUSIP resolution
# ---------------------------------------------------------------------------

CUSIP_CACHE_TYPE = "cusip_resolution"
CUSIP_CACHE_TTL_SEC = _env_float("TRADELOG_CUSIP_CACHE_TTL_DAYS", 7) * 86400

QUEUE_INTERVAL_SEC = max(1.0, _env_float("TRADELOG_QUEUE_INTERVAL_SEC", 1800))
QUEUE_BATCH_SIZE = max(1, _env_int("TRADELOG_QUEUE_BATCH_SIZE", 5))
QUEUE_MAX_ATTEMPTS = max(1, _env_int("TRADELOG_QUEUE_MAX_ATTEMPTS", 5))
QUEUE_VISIBILITY_TIMEOUT_SEC = _env_float("TRADELOG_QUEUE_VISIBILITY_TIMEOUT_SEC", 300)
QUEUE_RETENTION_DAYS = 7

# Backoff after the Nth failed attempt (index = attempts - 1, clamped)
QUEUE_RETRY_DELAYS_SEC: tuple[float, ...] = (30, 60, 5 * 60, 15 * 60, 30 * 60)

INFERENCE_MODEL = os.getenv("TRADELOG_INFERENCE_MODEL", "claude-haiku-4-5-20251001")

# ---------------------------------------------------------------------------
# Import jobs
# ---------------------------------------------------------------------------

IMPORT_TIMEOUT_SEC = _env_float("TRADELOG_IMPORT_TIMEOUT_SEC", 600)
IMPORT_WORKERS = max(1, _env_int("TRADELOG_IMPORT_WORKERS", 2))


def configure_logging(level: str | int | None = None) -> None:
    """Install the process-wide log format used by every tradelog module."""
    if level is None:
        level = os.getenv("TRADELOG_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
