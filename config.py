import json
import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

# Secret: stays in .env
CONNECTION_STRING = os.getenv("TRENDVIEW_CONNECTION_STRING")

# User config: loaded from ~/.trendview/config.json (primary)
# or project-root config.json (fallback).
CONFIG_PATH = Path.home() / ".trendview" / "config.json"
_LOCAL_CONFIG_PATH = Path(__file__).resolve().parent / "config.json"
_user_config: dict = {}


def _load_config() -> dict:
    # Project-local config.json as base, user home config overlaid on top
    merged: dict = {}
    for path in (_LOCAL_CONFIG_PATH, CONFIG_PATH):
        if path is not None and path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    merged.update(json.load(f))
            except (json.JSONDecodeError, OSError):
                pass
    return merged


def get(key: str, default=None):
    """Get a config value by dot-separated key. E.g. get('performance.max_cache_size', 100)"""
    keys = key.split(".")
    val = _user_config
    for k in keys:
        if isinstance(val, dict):
            val = val.get(k)
        else:
            return default
    return val if val is not None else default


_user_config = _load_config()


# ---- Data directory -----------------------------------------------------------
# Single source of truth for the base data directory (logs, default database).
# Priority: TRENDVIEW_DIR env var > "data_dir" config key > ~/.trendview

_data_dir: Optional[Path] = None


def get_data_dir() -> Path:
    """Return the resolved base data directory.

    Resolution order:
    1. ``TRENDVIEW_DIR`` environment variable (highest, useful for CI/Docker)
    2. ``"data_dir"`` key in config.json
    3. ``~/.trendview`` (default)
    """
    global _data_dir
    if _data_dir is not None:
        return _data_dir
    env_val = os.environ.get("TRENDVIEW_DIR")
    if env_val:
        _data_dir = Path(env_val).expanduser().resolve()
    else:
        configured = get("data_dir")
        if configured:
            _data_dir = Path(configured).expanduser().resolve()
        else:
            _data_dir = Path.home() / ".trendview"
    return _data_dir


def _reset_data_dir() -> None:
    """Reset the cached data directory (for testing only)."""
    global _data_dir
    _data_dir = None


# ---- Database -----------------------------------------------------------------
DATABASE_BACKEND = get("database.backend", "sqlite")        # "sqlite" or "dbapi"
DATABASE_DRIVER_MODULE = get("database.driver_module")      # e.g. "pyodbc" for dbapi
CONNECTION_TIMEOUT = get("database.connection_timeout", 30)  # catalog / connect (s)
COMMAND_TIMEOUT = get("database.command_timeout", 60)        # bulk value query (s)
VALUE_DECIMALS = get("database.value_decimals", 2)


def get_connection_string() -> str | None:
    """Return the DB-API connection string.

    Resolution order: ``database.connection_string`` config key >
    ``TRENDVIEW_CONNECTION_STRING`` environment variable.
    """
    return get("database.connection_string") or CONNECTION_STRING


def get_database_path() -> Path:
    """Return the sqlite historian path (``database.path`` or ``<data_dir>/trend.db``)."""
    configured = get("database.path")
    if configured:
        return Path(configured).expanduser().resolve()
    return get_data_dir() / "trend.db"


# ---- Performance / cache ------------------------------------------------------
MAX_CONCURRENT_CONNECTIONS = get("performance.max_concurrent_connections", 10)
ENABLE_DATA_CACHE = get("performance.enable_data_cache", True)
CACHE_EXPIRATION_MINUTES = get("performance.cache_expiration_minutes", 10)
MAX_CACHE_SIZE = get("performance.max_cache_size", 100)
CACHE_SWEEP_INTERVAL_MINUTES = get("performance.cache_sweep_interval_minutes", 5)

# ---- Chart --------------------------------------------------------------------
MAX_DATA_POINTS = get("chart.max_data_points", 10000)
MAX_SELECTED_TAGS = get("chart.max_selected_tags", 8)
