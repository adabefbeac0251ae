"""CodeMeter Configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


# Shared across every IDE window on this machine
DATA_DIR = Path(os.getenv("CODEMETER_DATA_DIR", str(Path.home() / ".codemeter"))).expanduser()

# Session segmentation
MIN_IDLE_MS = 30_000
IDLE_MS = max(MIN_IDLE_MS, _env_int("CODEMETER_IDLE_MS", 2 * 60_000))
IDLE_POLL_MS = max(1_000, _env_int("CODEMETER_IDLE_POLL_MS", 5_000))
STALE_SESSION_HOURS = _env_int("CODEMETER_STALE_SESSION_HOURS", 24)

# Sync
SYNC_LOOKBACK_MS = _env_int("CODEMETER_SYNC_LOOKBACK_MS", 5 * 60_000)
SYNC_INTERVAL_MINUTES = max(60, _env_int("CODEMETER_SYNC_INTERVAL_MINUTES", 60))
SYNC_WINDOW_MS = 24 * 60 * 60 * 1000
RETRY_MAX_ATTEMPTS = max(1, _env_int("CODEMETER_RETRY_MAX_ATTEMPTS", 4))
RETRY_BASE_DELAY_MS = _env_int("CODEMETER_RETRY_BASE_DELAY_MS", 500)
RETRY_MAX_DELAY_MS = _env_int("CODEMETER_RETRY_MAX_DELAY_MS", 10_000)

# Attribution
MIN_CONFLICT_CONFIDENCE = _env_float("CODEMETER_MIN_CONFLICT_CONFIDENCE", 0.0)
REVIEW_CONFIDENCE_THRESHOLD = 0.7

# Storage maintenance
COMPACT_INTERVAL_SECONDS = _env_int("CODEMETER_COMPACT_INTERVAL_SECONDS", 15 * 60)
LOCK_STALE_MS = _env_int("CODEMETER_LOCK_STALE_MS", 5 * 60_000)

# Budgets
DEFAULT_ALERT_THRESHOLDS = [0.7, 0.85, 1.0]
BUDGET_ALERTS_ENABLED = _env_bool("CODEMETER_BUDGET_ALERTS", True)

# Observability
OTEL_ENABLED = _env_bool("CODEMETER_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("CODEMETER_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("CODEMETER_OTEL_SERVICE_NAME", "codemeter")
PROM_PORT = _env_int("CODEMETER_PROM_PORT", 0)

# Server settings
HOST = os.getenv("CODEMETER_HOST", "127.0.0.1")
PORT = _env_int("CODEMETER_PORT", 8765)
