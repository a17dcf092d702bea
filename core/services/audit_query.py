"""
Audit log query tool.
"""

from __future__ import annotations

from typing import Optional

import core.config as config
from core.audit import list_audit_log
from core.context import RequestContext
from core.db import DB
from core.services.authorization import require_mutation
from core.services.memory_shared import (
    MAX_SHORT_TEXT_LENGTH,
    service_tool,
    _resolve,
    _validate_limit,
    _validate_optional_text,
)


@service_tool
def get_audit_log(
    agent_id: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = config.AUDIT_LOG_DEFAULT_LIMIT,
    flagged_only: bool = False,
    context: Optional[RequestContext] = None,
) -> dict:
    """Recent audit rows for the caller's tenant. Needs mutation-level authority."""
    context = _resolve(context)
    require_mutation("get_audit_log", context)
    _validate_optional_text(agent_id, "agent_id", MAX_SHORT_TEXT_LENGTH)
    _validate_optional_text(operation, "operation", 100)
    limit = _validate_limit(limit, "limit", config.AUDIT_LOG_MAX_LIMIT)

    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    db = DB.SessionLocal()
    try:
        entries = list_audit_log(
            db,
            tenant_id=context.tenant_id,
            agent_id=agent_id,
            operation=operation,
            flagged_only=flagged_only,
            limit=limit,
        )
    finally:
        db.close()

    return {
        "count": len(entries),
        "filters": {
            "agentId": agent_id,
            "operation": operation,
            "flaggedOnly": flagged_only,
            "limit": limit,
        },
        "entries": entries,
    }


__all__ = ["get_audit_log"]
