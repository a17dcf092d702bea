"""
Audit logging port (append-only, content-hash only).

Writes go through an injectable sink. The default sink opens its own session so
an audit failure can never roll back or abort the data write it describes.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, Optional

import core.config as config
from core.models import AuditLogEntry

MAX_TARGET_LENGTH = 500
MAX_REASON_LENGTH = 1000


def content_hash(content: Any) -> Optional[str]:
    if content is None:
        return None
    if not isinstance(content, (str, bytes)):
        content = repr(content)
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def _truncate(value: Optional[str], max_len: int) -> Optional[str]:
    if value is None:
        return None
    value = str(value)
    return value if len(value) <= max_len else value[:max_len]


class AuditSink:
    """Receives one call per write attempt, accepted or rejected."""

    def record(
        self,
        *,
        operation: str,
        tenant_id: str,
        actor_id: Optional[str],
        content: Any = None,
        target: Optional[str] = None,
        target_count: Optional[int] = None,
        flagged: bool = False,
        flag_reason: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


class NullAuditSink(AuditSink):
    def record(self, **kwargs) -> None:
        return None


class DatabaseAuditSink(AuditSink):
    """Append rows to ``audit_log`` in a dedicated session (fire-and-forget)."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _open_session(self):
        if self._session_factory is not None:
            return self._session_factory()
        from core.db import DB

        if DB.SessionLocal is None:
            raise RuntimeError("Database not initialized - SessionLocal is None")
        return DB.SessionLocal()

    def record(
        self,
        *,
        operation: str,
        tenant_id: str,
        actor_id: Optional[str],
        content: Any = None,
        target: Optional[str] = None,
        target_count: Optional[int] = None,
        flagged: bool = False,
        flag_reason: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        try:
            db = self._open_session()
        except Exception as exc:
            config.logger.warning("audit_write_failed", extra={"operation": operation, "error": str(exc)})
            return
        try:
            log_entry(
                db,
                operation=operation,
                tenant_id=tenant_id,
                actor_id=actor_id,
                content=content,
                target=target,
                target_count=target_count,
                flagged=flagged,
                flag_reason=flag_reason,
                reason=reason,
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            config.logger.warning("audit_write_failed", extra={"operation": operation, "error": str(exc)})
        finally:
            db.close()


def log_entry(
    db,
    *,
    operation: str,
    tenant_id: str,
    actor_id: Optional[str],
    content: Any = None,
    target: Optional[str] = None,
    target_count: Optional[int] = None,
    flagged: bool = False,
    flag_reason: Optional[str] = None,
    reason: Optional[str] = None,
) -> AuditLogEntry:
    """
    Append an audit row. Only the SHA-256 of the content is kept.
    """
    if not operation or not isinstance(operation, str):
        raise ValueError("operation must be a non-empty string")
    if not tenant_id:
        raise ValueError("tenant_id is required for audit rows")

    entry = AuditLogEntry(
        created_at=datetime.utcnow(),
        operation=operation,
        tenant_id=tenant_id,
        actor_id=_truncate(actor_id, 255),
        content_hash=content_hash(content),
        flagged=1 if flagged else 0,
        flag_reason=_truncate(flag_reason, MAX_REASON_LENGTH),
        target=_truncate(target, MAX_TARGET_LENGTH),
        target_count=target_count,
        reason=_truncate(reason, MAX_REASON_LENGTH),
    )
    db.add(entry)
    return entry


def list_audit_log(
    db,
    *,
    tenant_id: str,
    agent_id: Optional[str] = None,
    operation: Optional[str] = None,
    flagged_only: bool = False,
    limit: int = 20,
) -> list[dict]:
    """
    Query recent audit rows for one tenant, newest first.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")

    query = db.query(AuditLogEntry).filter(AuditLogEntry.tenant_id == tenant_id)
    if agent_id:
        query = query.filter(AuditLogEntry.actor_id == agent_id)
    if operation:
        query = query.filter(AuditLogEntry.operation == operation)
    if flagged_only:
        query = query.filter(AuditLogEntry.flagged == 1)

    rows = (
        query.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id": row.id,
            "operation": row.operation,
            "tenant_id": row.tenant_id,
            "agent_id": row.actor_id,
            "content_hash": row.content_hash,
            "flagged": row.flagged,
            "flag_reason": row.flag_reason,
            "target": row.target,
            "target_count": row.target_count,
            "reason": row.reason,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]


_audit_sink: AuditSink = DatabaseAuditSink()


def get_audit_sink() -> AuditSink:
    return _audit_sink


def set_audit_sink(sink: Optional[AuditSink]) -> AuditSink:
    """Swap the active sink; returns the previous one. ``None`` restores the default."""
    global _audit_sink
    previous = _audit_sink
    _audit_sink = sink if sink is not None else DatabaseAuditSink()
    return previous


def audit(**kwargs) -> None:
    """Record through the active sink. Never raises."""
    try:
        _audit_sink.record(**kwargs)
    except Exception as exc:
        config.logger.warning(
            "audit_write_failed",
            extra={"operation": kwargs.get("operation"), "error": str(exc)},
        )


__all__ = [
    "AuditLogEntry",
    "AuditSink",
    "NullAuditSink",
    "DatabaseAuditSink",
    "audit",
    "content_hash",
    "get_audit_sink",
    "list_audit_log",
    "log_entry",
    "set_audit_sink",
]
