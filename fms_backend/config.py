"""
Configuration for FMS.

All tunables are module-level constants resolved once from the environment.
Each setting may list several variable names; the first non-blank one wins.
"""
import os
import logging
from pathlib import Path
from typing import Callable, TypeVar

from .utils import parse_bool

logger = logging.getLogger(__name__)

N = TypeVar("N", int, float)


def _env_raw(*names: str, default: str | None = None) -> str | None:
    for name in filter(None, names):
        val = (os.getenv(name) or "").strip()
        if val:
            return val
    return default


def _env_number(cast: Callable[[str], N], default: N, names: tuple, low: N | None, high: N | None) -> N:
    label = names[0] if names else "<unset>"
    raw = _env_raw(*names)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not a %s), using %s", label, raw, cast.__name__, default)
        return default
    bounded = value
    if low is not None:
        bounded = max(bounded, low)
    if high is not None:
        bounded = min(bounded, high)
    if bounded != value:
        logger.warning("%s=%s is out of range, using %s", label, value, bounded)
    return bounded


def _env_int(default: int, *names: str, min_value: int | None = None, max_value: int | None = None) -> int:
    return _env_number(int, default, names, min_value, max_value)


def _env_float(default: float, *names: str, min_value: float | None = None, max_value: float | None = None) -> float:
    return _env_number(float, default, names, min_value, max_value)


def _env_bool(default: bool, *names: str) -> bool:
    return parse_bool(_env_raw(*names), default)


# --- Index store ---
# The store is rebuilt every run; FMS_INDEX_DIR only moves the scratch directory.
INDEX_TMP_PARENT = _env_raw("FMS_INDEX_DIR", "FMS_TMPDIR")
DB_TIMEOUT = _env_float(30.0, "FMS_DB_TIMEOUT", min_value=1.0, max_value=300.0)
DB_MAX_CONNECTIONS = _env_int(8, "FMS_DB_MAX_CONNECTIONS", min_value=2, max_value=64)

# Retries for a failed batch commit before the crawl reports degraded indexing.
STORE_RETRY_ATTEMPTS = _env_int(3, "FMS_STORE_RETRY_ATTEMPTS", min_value=0, max_value=20)
STORE_RETRY_BASE_SECONDS = _env_float(0.2, "FMS_STORE_RETRY_BASE_SECONDS", min_value=0.0, max_value=10.0)
STORE_RETRY_MAX_SECONDS = _env_float(2.0, "FMS_STORE_RETRY_MAX_SECONDS", min_value=0.0, max_value=60.0)

# --- Crawl ---
CRAWL_MAX_WORKERS = _env_int(4, "FMS_CRAWL_MAX_WORKERS", min_value=1, max_value=64)
# Hard ceiling for a single uncommitted batch; FMS_CRAWL_BATCH_SIZE is clamped to it.
CRAWL_BATCH_MAX = 2000
CRAWL_BATCH_SIZE = _env_int(250, "FMS_CRAWL_BATCH_SIZE", min_value=1, max_value=CRAWL_BATCH_MAX)
CRAWL_COMMIT_INTERVAL_MS = _env_int(500, "FMS_CRAWL_COMMIT_INTERVAL_MS", min_value=10, max_value=60_000)
CRAWL_FOLLOW_SYMLINKS = _env_bool(True, "FMS_CRAWL_FOLLOW_SYMLINKS")
CRAWL_DEFAULT_ROOT = _env_raw("FMS_ROOT", default=str(Path.home()))

# --- Search ---
SEARCH_MAX_RESULTS = _env_int(1000, "FMS_SEARCH_MAX_RESULTS", min_value=1, max_value=100_000)
SEARCH_MAX_QUERY_LENGTH = _env_int(512, "FMS_SEARCH_MAX_QUERY_LENGTH", min_value=16, max_value=8192)
# Trigram full-text matching needs at least this many characters.
SEARCH_FTS_MIN_CHARS = 3

# --- Watcher ---
WATCHER_ENABLED = _env_bool(True, "FMS_ENABLE_WATCHER")
WATCHER_DEBOUNCE_MS = _env_int(500, "FMS_WATCHER_DEBOUNCE_MS", min_value=0, max_value=120_000)
WATCHER_PENDING_MAX = _env_int(5000, "FMS_WATCHER_PENDING_MAX", min_value=0, max_value=1_000_000)
WATCHER_FLUSH_MAX_PATHS = _env_int(500, "FMS_WATCHER_FLUSH_MAX_PATHS", min_value=1, max_value=50_000)

# --- Launcher ---
APPS_CONFIG_PATH = Path(_env_raw("FMS_APPS_CONFIG", default=str(Path.home() / ".fms" / "apps.json"))).expanduser()

# --- HTTP ---
API_PREFIX = "/fms/"
HTTP_HOST = _env_raw("FMS_HOST", default="127.0.0.1")
HTTP_PORT = _env_int(8765, "FMS_PORT", min_value=1, max_value=65535)
