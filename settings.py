"""Environment-driven settings shared by the server, sync worker and CLI."""
import logging
import os
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


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(name: str, default: float, minimum: Optional[float] = None) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


INVENTORY_DB_PATH = _env_string('INVENTORY_DB_PATH', 'inventory.db')

# Remote canonical store (PostgREST style). Unset -> terminal runs queue-only.
REMOTE_BASE_URL = _env_string('REMOTE_BASE_URL')
REMOTE_API_KEY = _env_string('REMOTE_API_KEY')
REMOTE_ADJUST_RPC = _env_string('REMOTE_ADJUST_RPC', 'adjust_field')
REMOTE_TIMEOUT = _env_float('REMOTE_TIMEOUT', 10.0, minimum=0.5)
REMOTE_PROBE_TIMEOUT = _env_float('REMOTE_PROBE_TIMEOUT', 2.0, minimum=0.2)

SYNC_MAX_RETRIES = _env_int('SYNC_MAX_RETRIES', 3, minimum=1)
SYNC_INTERVAL = _env_float('SYNC_INTERVAL', 30.0, minimum=5.0)
SYNC_BATCH_LIMIT = _env_int('SYNC_BATCH_LIMIT', 0, minimum=0)

# Idempotency ledger rows older than this are pruned (must exceed the longest offline spell).
LEDGER_RETENTION_DAYS = _env_float('LEDGER_RETENTION_DAYS', 90.0, minimum=1.0)
LEDGER_PRUNE_INTERVAL = _env_float('LEDGER_PRUNE_INTERVAL', 86400.0, minimum=60.0)

AUDIT_CRITICAL_THRESHOLD = _env_float('AUDIT_CRITICAL_THRESHOLD', 50.0, minimum=0.0)

# Force local queue-only mode even when remote creds exist.
POS_QUEUE_ONLY = os.getenv('POS_QUEUE_ONLY', '0') == '1'

_LOG_LEVEL_NAME = (os.getenv('POS_LOG_LEVEL') or 'INFO').strip().upper()
LOG_LEVEL = getattr(logging, _LOG_LEVEL_NAME, logging.INFO)
if not isinstance(LOG_LEVEL, int):
    LOG_LEVEL = logging.INFO
