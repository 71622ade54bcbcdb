"""
Configuration module for Robot Extract API
"""

import os
from pathlib import Path


def env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable"""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def env_list(key: str, default: str = "") -> list:
    return [p.strip() for p in os.getenv(key, default).split(",") if p.strip()]


def _read_version_from_repo(default: str = "dev") -> str:
    try:
        version_file = Path(__file__).resolve().parents[1] / "VERSION"
        v = version_file.read_text(encoding="utf-8").strip()
        if v:
            return v
    except OSError:
        pass
    return os.getenv("APP_VERSION", default)


API_VERSION = _read_version_from_repo()
SERVICE_NAME = "robot-extract-api"

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./robot.db")

# Redis is optional; counters fall back to process memory
REDIS_URL = os.getenv("REDIS_URL")

# Object storage (results, cache payloads, content, screenshots, webhook DLQ)
STORAGE_DIR = os.getenv("STORAGE_DIR", "./data/storage")

# API configuration
API_PREFIX = "/v1"
APP_PORT = int(os.getenv("APP_PORT", "8080"))
CORS_ORIGINS = env_list("CORS_ORIGINS", "*")
MAX_REQUEST_BYTES = int(os.getenv("MAX_REQUEST_BYTES", str(1024 * 1024)))
DOCS_URL = os.getenv("DOCS_URL", "https://docs.robot-extract.dev")

# Logging configuration
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")
HTTP_LOG_EXCLUDE_PATHS = set(env_list("HTTP_LOG_EXCLUDE_PATHS", "/health,/v1/health,/v1/metrics/prometheus"))

# Auth and quota
ALLOW_ANON: bool = env_bool("ALLOW_ANON", False)
ANON_DAILY_LIMIT = int(os.getenv("ANON_DAILY_LIMIT", "5"))
RATE_LIMIT_ANON = int(os.getenv("RATE_LIMIT_ANON", "60"))
RATE_LIMIT_AUTH = int(os.getenv("RATE_LIMIT_AUTH", "1000"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
TRUST_PROXY: bool = env_bool("TRUST_PROXY", False)
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
CRON_SECRET = os.getenv("CRON_SECRET", "")

TIERS = ("free", "github", "pro")
DEFAULT_CREDITS = {
    "free": int(os.getenv("CREDITS_FREE", "50")),
    "github": int(os.getenv("CREDITS_GITHUB", "50")),
    "pro": int(os.getenv("CREDITS_PRO", "1000")),
}

# Credit policy for jobs that do not complete
REFUND_BLOCKED: bool = env_bool("REFUND_BLOCKED", False)
REFUND_FAILED: bool = env_bool("REFUND_FAILED", False)

# Extraction
MAX_BATCH_SIZE = min(int(os.getenv("MAX_BATCH_SIZE", "10")), 50)
MAX_CONTENT_CHARS = int(os.getenv("MAX_CONTENT_CHARS", "20000"))
SYNC_TIMEOUT_GRACE_MS = int(os.getenv("SYNC_TIMEOUT_GRACE_MS", "30000"))
STORE_RESULTS: bool = env_bool("STORE_RESULTS", True)

# Result cache
CACHE_ENABLED: bool = env_bool("CACHE_ENABLED", True)
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "900"))

# Idempotency
IDEMPOTENCY_TTL_SECONDS = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", str(48 * 3600)))

# External collaborators
RENDER_SERVICE_URL = os.getenv("RENDER_SERVICE_URL", "http://localhost:9001")
EXTRACT_SERVICE_URL = os.getenv("EXTRACT_SERVICE_URL", "http://localhost:9002")
COLLABORATOR_TOKEN = os.getenv("COLLABORATOR_TOKEN", "")
EXTRACT_TIMEOUT_SECONDS = float(os.getenv("EXTRACT_TIMEOUT_SECONDS", "60"))
# Circuit breaker around each collaborator
BREAKER_FAILURE_THRESHOLD = int(os.getenv("BREAKER_FAILURE_THRESHOLD", "5"))
BREAKER_RESET_SECONDS = float(os.getenv("BREAKER_RESET_SECONDS", "60"))
BREAKER_HALF_OPEN_CALLS = int(os.getenv("BREAKER_HALF_OPEN_CALLS", "3"))

# Webhooks
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
WEBHOOK_ALLOW_HTTP: bool = env_bool("WEBHOOK_ALLOW_HTTP", False)
WEBHOOK_MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "3"))
WEBHOOK_BACKOFF_BASE_SECONDS = float(os.getenv("WEBHOOK_BACKOFF_BASE_SECONDS", "1.0"))
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))

# SSRF guard
SSRF_RESOLVE_DNS: bool = env_bool("SSRF_RESOLVE_DNS", True)

# Schedules
SCHEDULE_TICK_LIMIT = int(os.getenv("SCHEDULE_TICK_LIMIT", "25"))

# Retention configuration
USAGE_RETENTION_DAYS = int(os.getenv("USAGE_RETENTION_DAYS", "90"))
DLQ_MAX_AGE_DAYS = int(os.getenv("DLQ_MAX_AGE_DAYS", "7"))
