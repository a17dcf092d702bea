"""
Shared configuration for the neural memory engine.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("neuralmemory")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


SERVICE_NAME = "NeuralMemory"
SERVICE_VERSION = "0.1.0"

# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "sqlite").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/neural-memory.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)
SQLITE_BUSY_TIMEOUT_SECONDS = _get_float("SQLITE_BUSY_TIMEOUT_SECONDS", 15.0)

# Tenancy
DEFAULT_TENANT_ID = os.environ.get("NEURAL_DEFAULT_TENANT_ID", "default").strip() or "default"

# Identity resolution
DEV_AUTH_BYPASS = _get_bool("DEV_AUTH_BYPASS", False)
TRUST_PROXY_IDENTITY = _get_bool("TRUST_PROXY_IDENTITY", False)
ALLOW_LEGACY_GRAPH_MUTATIONS = _get_bool("ALLOW_LEGACY_GRAPH_MUTATIONS", False)

# Graph export
GRAPH_EXPORT_DEFAULT_LIMIT = _get_int("GRAPH_EXPORT_DEFAULT_LIMIT", 200)
GRAPH_EXPORT_MAX_LIMIT = _get_int("GRAPH_EXPORT_MAX_LIMIT", 1000)
GRAPH_EXPORT_ETAG_TTL_SECONDS = _get_float("GRAPH_EXPORT_ETAG_TTL_SECONDS", 30.0)

# Session context assembly
CONTEXT_DEFAULT_MAX_TOKENS = _get_int("CONTEXT_DEFAULT_MAX_TOKENS", 4000)
CONTEXT_CHARS_PER_TOKEN = _get_int("CONTEXT_CHARS_PER_TOKEN", 4)
CONTEXT_RECENT_OBSERVATION_LIMIT = _get_int("CONTEXT_RECENT_OBSERVATION_LIMIT", 10)
CONTEXT_RECENCY_WINDOW_DAYS = _get_int("CONTEXT_RECENCY_WINDOW_DAYS", 14)
CONTEXT_DECISION_LIMIT = _get_int("CONTEXT_DECISION_LIMIT", 5)
CONTEXT_LEARNING_LIMIT = _get_int("CONTEXT_LEARNING_LIMIT", 10)
CONTEXT_MIN_LEARNINGS = _get_int("CONTEXT_MIN_LEARNINGS", 1)
CONTEXT_GUARDRAIL_LIMIT = _get_int("CONTEXT_GUARDRAIL_LIMIT", 10)

# Request/input limits
SANITIZER_MAX_CONTENT_LENGTH = _get_int("SANITIZER_MAX_CONTENT_LENGTH", 50000)
MAX_SHORT_TEXT_LENGTH = _get_int("NEURAL_MAX_SHORT_TEXT_LENGTH", 255)
MAX_REASON_LENGTH = _get_int("NEURAL_MAX_REASON_LENGTH", 1000)
MAX_QUERY_LENGTH = _get_int("NEURAL_MAX_QUERY_LENGTH", 1000)
MAX_BATCH_ITEMS = _get_int("NEURAL_MAX_BATCH_ITEMS", 100)
MAX_LIST_ITEMS = _get_int("NEURAL_MAX_LIST_ITEMS", 200)
MAX_METADATA_BYTES = _get_int("NEURAL_MAX_METADATA_BYTES", 20000)
SEARCH_LIMIT_DEFAULT = _get_int("SEARCH_LIMIT_DEFAULT", 50)
SEARCH_LIMIT_MAX = _get_int("SEARCH_LIMIT_MAX", 200)
MESSAGE_LIMIT_DEFAULT = _get_int("MESSAGE_LIMIT_DEFAULT", 5)
MESSAGE_LIMIT_MAX = _get_int("MESSAGE_LIMIT_MAX", 20)
AUDIT_LOG_DEFAULT_LIMIT = _get_int("AUDIT_LOG_DEFAULT_LIMIT", 20)
AUDIT_LOG_MAX_LIMIT = _get_int("AUDIT_LOG_MAX_LIMIT", 200)

# Vector index collaborator
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "none").strip().lower()
VECTOR_INDEX_URL = os.environ.get("VECTOR_INDEX_URL")
VECTOR_INDEX_API_KEY = os.environ.get("VECTOR_INDEX_API_KEY")
VECTOR_INDEX_CLASS = os.environ.get("VECTOR_INDEX_CLASS", "NeuralMemory")
VECTOR_INDEX_TIMEOUT_SECONDS = _get_float("VECTOR_INDEX_TIMEOUT_SECONDS", 5.0)
VECTOR_FAILURE_THRESHOLD = _get_int("VECTOR_FAILURE_THRESHOLD", 5)
VECTOR_COOLDOWN_SECONDS = _get_int("VECTOR_COOLDOWN_SECONDS", 60)

# Tombstone sweep
TOMBSTONE_SWEEP_INTERVAL_SECONDS = _get_int("TOMBSTONE_SWEEP_INTERVAL_SECONDS", 300)
TOMBSTONE_SWEEP_BATCH_LIMIT = _get_int("TOMBSTONE_SWEEP_BATCH_LIMIT", 50)
TOMBSTONE_SWEEP_MAX_FAILURES = _get_int("TOMBSTONE_SWEEP_MAX_FAILURES", 5)

# Notifications
NOTIFY_WEBHOOK_URL = os.environ.get("NOTIFY_WEBHOOK_URL")
NOTIFY_TIMEOUT_SECONDS = _get_float("NOTIFY_TIMEOUT_SECONDS", 3.0)

# HTTP surface
TRUSTED_HOSTS = [host.strip() for host in os.environ.get("TRUSTED_HOSTS", "").split(",") if host.strip()]
CORS_ALLOWED_ORIGINS = [
    origin.strip() for origin in os.environ.get("CORS_ALLOWED_ORIGINS", "").split(",") if origin.strip()
]


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if VECTOR_BACKEND not in {"weaviate", "none"}:
        errors.append("VECTOR_BACKEND must be 'weaviate' or 'none'")
    if VECTOR_BACKEND == "weaviate" and not VECTOR_INDEX_URL:
        errors.append("VECTOR_INDEX_URL is required when VECTOR_BACKEND=weaviate")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        is_sqlite_url = DATABASE_URL.lower().startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    if GRAPH_EXPORT_MAX_LIMIT <= 0:
        errors.append("GRAPH_EXPORT_MAX_LIMIT must be positive")
    if CONTEXT_CHARS_PER_TOKEN <= 0:
        errors.append("CONTEXT_CHARS_PER_TOKEN must be positive")

    if ALLOW_LEGACY_GRAPH_MUTATIONS:
        logger.warning(
            "ALLOW_LEGACY_GRAPH_MUTATIONS is enabled; unscoped API keys receive full graph access."
        )
    if DEV_AUTH_BYPASS:
        logger.warning("DEV_AUTH_BYPASS is enabled; unauthenticated requests run as dev.")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
