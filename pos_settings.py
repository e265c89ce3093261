"""
Runtime configuration for the offline POS ledger.

Values come from the process environment, optionally seeded from a local
.env file. Everything is read once at import; tests override the module
attributes directly.
"""
import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_string(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_flag(name: str, default: str = '0') -> bool:
    return (_env_string(name, default) or default) == '1'


BASE_DIR = Path(__file__).resolve().parent

# Local storage
POS_DB_PATH = _env_string('POS_DB_PATH', 'pos.db')
SCHEMA_PATH = _env_string('POS_SCHEMA_PATH', str(BASE_DIR / 'schema.sql'))
PAYMENTS_COLLECTION = _env_string('PAYMENTS_COLLECTION', 'payments')

# Remote document store (unset base -> in-memory store, handy for demos)
REMOTE_BASE = _env_string('REMOTE_BASE')
REMOTE_API_KEY = _env_string('REMOTE_API_KEY')
REMOTE_API_SECRET = _env_string('REMOTE_API_SECRET')
REMOTE_TIMEOUT = _env_float('REMOTE_TIMEOUT', 20.0)
REMOTE_HEALTH_PATH = _env_string('REMOTE_HEALTH_PATH', '/api/method/ping')

# Connectivity + sync tuning
POS_FORCE_OFFLINE = _env_flag('POS_FORCE_OFFLINE')
CONNECTIVITY_INTERVAL = max(1.0, _env_float('CONNECTIVITY_INTERVAL', 5.0))
SYNC_MAX_ATTEMPTS = max(1, _env_int('SYNC_MAX_ATTEMPTS', 3))
SYNC_RETRY_DELAY = max(0.0, _env_float('SYNC_RETRY_DELAY', 0.5))

# Ledger display
TICKET_PREFIX = _env_string('TICKET_PREFIX', 'BBFH')

# Server
HOST = _env_string('HOST', '0.0.0.0')
PORT = _env_int('PORT', 5000)
FLASK_DEBUG = _env_flag('FLASK_DEBUG')

_LOG_LEVEL_NAME = (_env_string('POS_LOG_LEVEL') or 'INFO').upper()
LOG_LEVEL = getattr(logging, _LOG_LEVEL_NAME, logging.INFO)
if not isinstance(LOG_LEVEL, int):
    LOG_LEVEL = logging.INFO
