"""
Shared helpers and configuration for memory services.
"""

from __future__ import annotations

from datetime import datetime
from functools import wraps
from typing import Callable, Optional

import core.config as config
from core.context import RequestContext, require_context
from core.errors import MemoryEngineError, ValidationIssue
from core.validators import (
    validate_required_text as _validate_required_text,
    validate_optional_text as _validate_optional_text,
    validate_limit as _validate_limit,
    validate_index as _validate_index,
    validate_confidence as _validate_confidence,
    validate_list as _validate_list,
    validate_string_list as _validate_string_list,
    validate_metadata as _validate_metadata,
)

# =============================================================================
# Configuration
# =============================================================================

logger = config.logger

MAX_SHORT_TEXT_LENGTH = config.MAX_SHORT_TEXT_LENGTH
MAX_REASON_LENGTH = config.MAX_REASON_LENGTH
MAX_QUERY_LENGTH = config.MAX_QUERY_LENGTH
MAX_BATCH_ITEMS = config.MAX_BATCH_ITEMS
MAX_LIST_ITEMS = config.MAX_LIST_ITEMS
SANITIZER_MAX_CONTENT_LENGTH = config.SANITIZER_MAX_CONTENT_LENGTH


# =============================================================================
# Helper Functions
# =============================================================================

def _utcnow() -> datetime:
    return datetime.utcnow()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _actor_for(context: RequestContext, agent: Optional[str] = None) -> str:
    return context.actor(agent)


def _resolve(context: Optional[RequestContext]) -> RequestContext:
    return require_context(context)


def _validate_reason(reason: Optional[str]) -> None:
    _validate_optional_text(reason, "reason", MAX_REASON_LENGTH)


def _tool_error_payload(tool_name: str, exc: Exception) -> dict:
    if isinstance(exc, MemoryEngineError):
        return {
            "status": "error",
            "error": exc.title,
            "error_type": exc.error_type,
            "tool": tool_name,
            "message": str(exc),
        }
    return {
        "status": "error",
        "error": "Bad Request",
        "error_type": "validation_error",
        "tool": tool_name,
        "field": getattr(exc, "field", "unknown"),
        "message": str(exc),
    }


def _log_tool_error(tool_name: str, exc: Exception, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": getattr(exc, "field", None),
        "error_type": getattr(exc, "error_type", type(exc).__name__),
        "detail": str(exc),
    }
    if warn:
        logger.warning("tool_validation_error", extra=payload)
    else:
        logger.info("tool_validation_error", extra=payload)


def _tool_error_handler(fn: Callable[..., dict]) -> Callable[..., dict]:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except MemoryEngineError as exc:
            _log_tool_error(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc)
        except ValidationIssue as exc:
            _log_tool_error(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc)
        except ValueError as exc:
            issue = ValidationIssue(str(exc), field="unknown", error_type="value_error")
            _log_tool_error(fn.__name__, issue, warn=True)
            return _tool_error_payload(fn.__name__, issue)
    return wrapper


def service_tool(fn: Callable[..., dict]) -> Callable[..., dict]:
    return _tool_error_handler(fn)


def is_error_payload(payload: dict) -> bool:
    return isinstance(payload, dict) and payload.get("status") == "error"


__all__ = [
    "logger",
    "service_tool",
    "is_error_payload",
    "_actor_for",
    "_iso",
    "_resolve",
    "_utcnow",
    "_validate_confidence",
    "_validate_index",
    "_validate_limit",
    "_validate_list",
    "_validate_metadata",
    "_validate_optional_text",
    "_validate_reason",
    "_validate_required_text",
    "_validate_string_list",
]
