"""Contract Sync configuration."""
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

# Project root (one level up from contract_sync/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# On-device stores
DATA_DIR = Path(os.getenv("CONTRACT_SYNC_DATA_DIR", str(PROJECT_ROOT / "data")))
SECURE_DB_PATH = Path(os.getenv("CONTRACT_SYNC_SECURE_DB_PATH", str(DATA_DIR / "secure_store.db")))
GENERAL_DB_PATH = Path(os.getenv("CONTRACT_SYNC_GENERAL_DB_PATH", str(DATA_DIR / "general_store.db")))
BROWSER_STORE_PATH = Path(os.getenv("CONTRACT_SYNC_BROWSER_STORE_PATH", str(DATA_DIR / "local_storage.json")))
FILE_CACHE_DIR = Path(os.getenv("CONTRACT_SYNC_FILE_CACHE_DIR", str(DATA_DIR / "documents")))

# "native" or "web"; web routes every call to the browser-style store
PLATFORM = os.getenv("CONTRACT_SYNC_PLATFORM", "native").strip().lower()

# Storage limits
SECURE_STORE_MAX_BYTES = _env_int("CONTRACT_SYNC_SECURE_STORE_MAX_BYTES", 2048)
CHUNK_SIZE = _env_int("CONTRACT_SYNC_CHUNK_SIZE", 2000)
MAX_KEY_LENGTH = _env_int("CONTRACT_SYNC_MAX_KEY_LENGTH", 100)

# Index caps
SESSIONS_INDEX_LIMIT = _env_int("CONTRACT_SYNC_SESSIONS_INDEX_LIMIT", 100)
DEVICE_SESSIONS_LIMIT = _env_int("CONTRACT_SYNC_DEVICE_SESSIONS_LIMIT", 50)
OFFLINE_ANALYSES_LIMIT = _env_int("CONTRACT_SYNC_OFFLINE_ANALYSES_LIMIT", 50)

# Remote analysis service
API_BASE_URL = os.getenv("CONTRACT_SYNC_API_BASE_URL", "http://localhost:5000")
CONNECTIVITY_URL = os.getenv("CONTRACT_SYNC_CONNECTIVITY_URL", "https://www.google.com")
CONNECTIVITY_TIMEOUT_SECONDS = _env_float("CONTRACT_SYNC_CONNECTIVITY_TIMEOUT_SECONDS", 2.0)
HTTP_TIMEOUT_SECONDS = _env_float("CONTRACT_SYNC_HTTP_TIMEOUT_SECONDS", 30.0)
# Uploads wait on server-side processing, which can take up to 12 minutes
UPLOAD_TIMEOUT_SECONDS = _env_float("CONTRACT_SYNC_UPLOAD_TIMEOUT_SECONDS", 720.0)

# Job polling
POLL_INITIAL_DELAY_SECONDS = _env_float("CONTRACT_SYNC_POLL_INITIAL_DELAY_SECONDS", 1.0)
POLL_BASE_INTERVAL_SECONDS = _env_float("CONTRACT_SYNC_POLL_BASE_INTERVAL_SECONDS", 2.0)
POLL_STEP_SECONDS = _env_float("CONTRACT_SYNC_POLL_STEP_SECONDS", 1.0)
POLL_MAX_INTERVAL_SECONDS = _env_float("CONTRACT_SYNC_POLL_MAX_INTERVAL_SECONDS", 15.0)
POLL_BACKGROUND_INTERVAL_SECONDS = _env_float("CONTRACT_SYNC_POLL_BACKGROUND_INTERVAL_SECONDS", 15.0)
JOB_MAX_RETRIES = _env_int("CONTRACT_SYNC_JOB_MAX_RETRIES", 50)
NOT_FOUND_PROBE_AFTER = _env_int("CONTRACT_SYNC_NOT_FOUND_PROBE_AFTER", 5)
UPLOAD_MAX_RETRIES = _env_int("CONTRACT_SYNC_UPLOAD_MAX_RETRIES", 3)

# Analytics
ANALYTICS_CACHE_SECONDS = _env_int("CONTRACT_SYNC_ANALYTICS_CACHE_SECONDS", 300)

# Observability
OTEL_ENABLED = _env_bool("CONTRACT_SYNC_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("CONTRACT_SYNC_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("CONTRACT_SYNC_OTEL_SERVICE_NAME", "contract-sync")
PROM_PORT = _env_int("CONTRACT_SYNC_PROM_PORT", 0)

# Server settings
HOST = os.getenv("CONTRACT_SYNC_HOST", "0.0.0.0")
PORT = int(os.getenv("CONTRACT_SYNC_PORT", "8000"))

# CORS
FRONTEND_ORIGIN = os.getenv("CONTRACT_SYNC_FRONTEND_ORIGIN", "http://localhost:8081")
