"""agentpulse configuration."""
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


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value or not value.strip():
        return default
    return Path(value.strip()).expanduser()


# Input paths
PROGRESS_FILE = _env_path("AGENTPULSE_PROGRESS_FILE", Path("/tmp/agent-progress.jsonl"))
SESSIONS_DIR = _env_path("AGENTPULSE_SESSIONS_DIR", Path.home() / ".openclaw" / "agents" / "main" / "sessions")
REGISTRY_FILE = _env_path("AGENTPULSE_REGISTRY_FILE", SESSIONS_DIR / "sessions.json")

# Buffers and caps
PROGRESS_BUFFER_CAP = _env_int("AGENTPULSE_PROGRESS_BUFFER_CAP", 100)
MAX_TRACKED_FILES = _env_int("AGENTPULSE_MAX_TRACKED_FILES", 50)
MAX_OPEN_CALLS = _env_int("AGENTPULSE_MAX_OPEN_CALLS", 200)
MAX_SESSIONS = _env_int("AGENTPULSE_MAX_SESSIONS", 20)
MAX_RECENT_ACTIONS = _env_int("AGENTPULSE_MAX_RECENT_ACTIONS", 5)

# Transcript scanning
DIR_CACHE_TTL_SECONDS = _env_float("AGENTPULSE_DIR_CACHE_TTL_SECONDS", 5.0)
ACTIVE_LOOKBACK_SECONDS = _env_int("AGENTPULSE_ACTIVE_LOOKBACK_SECONDS", 600)
MAX_ACTIVE_TRANSCRIPTS = _env_int("AGENTPULSE_MAX_ACTIVE_TRANSCRIPTS", 5)

# Session status thresholds (seconds since updatedAt)
RUNNING_THRESHOLD_SECONDS = _env_int("AGENTPULSE_RUNNING_THRESHOLD_SECONDS", 60)
IDLE_THRESHOLD_SECONDS = _env_int("AGENTPULSE_IDLE_THRESHOLD_SECONDS", 300)

# Adaptive polling
POLL_BASE_MS = _env_int("AGENTPULSE_POLL_BASE_MS", 1000)
POLL_STEP_MS = _env_int("AGENTPULSE_POLL_STEP_MS", 250)
POLL_MAX_MS = _env_int("AGENTPULSE_POLL_MAX_MS", 2000)
TICK_BUDGET_SECONDS = _env_float("AGENTPULSE_TICK_BUDGET_SECONDS", 2.0)

# Retention
SWEEP_INTERVAL_SECONDS = _env_int("AGENTPULSE_SWEEP_INTERVAL_SECONDS", 300)
RETENTION_LOOKBACK_SECONDS = _env_int("AGENTPULSE_RETENTION_LOOKBACK_SECONDS", 3600)

# File reads
FILE_RETRY_ATTEMPTS = _env_int("AGENTPULSE_FILE_RETRY_ATTEMPTS", 3)
FILE_RETRY_DELAY_SECONDS = _env_float("AGENTPULSE_FILE_RETRY_DELAY_SECONDS", 0.1)

# Observability
OTEL_ENABLED = _env_bool("AGENTPULSE_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("AGENTPULSE_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("AGENTPULSE_OTEL_SERVICE_NAME", "agentpulse")
PROM_PORT = _env_int("AGENTPULSE_PROM_PORT", 9464)

# Worker
WORKER_AUTOSTART = _env_bool("AGENTPULSE_WORKER_AUTOSTART", True)
STREAM_KEEPALIVE_SECONDS = _env_float("AGENTPULSE_STREAM_KEEPALIVE_SECONDS", 30.0)

# Server settings
HOST = os.getenv("AGENTPULSE_HOST", "0.0.0.0")
PORT = int(os.getenv("AGENTPULSE_PORT", "8000"))

# CORS
FRONTEND_ORIGIN = os.getenv("AGENTPULSE_FRONTEND_ORIGIN", "http://localhost:3000")
