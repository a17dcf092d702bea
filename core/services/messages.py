"""
Agent-to-agent message services.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func

import core.config as config
from core.audit import audit
from core.context import RequestContext
from core.db import DB
from core.errors import NotFound, ValidationIssue
from core.models import AgentMessage
from core.services.memory_shared import (
    MAX_LIST_ITEMS,
    MAX_SHORT_TEXT_LENGTH,
    SANITIZER_MAX_CONTENT_LENGTH,
    service_tool,
    _actor_for,
    _iso,
    _resolve,
    _utcnow,
    _validate_optional_text,
    _validate_required_text,
    _validate_string_list,
)
from core.services.sanitizer import enforce_clean

MESSAGE_PRIORITIES = {"low", "normal", "high", "urgent"}
SUMMARY_MAX_LENGTH = 120


def summarize(content: Optional[str], max_len: int = SUMMARY_MAX_LENGTH) -> str:
    text = (content or "").strip()
    if not text:
        return "(no summary)"
    first_line = text.splitlines()[0]
    if len(first_line) <= max_len:
        return first_line
    return first_line[: max_len - 3].rstrip() + "..."


def _parse_since(since: Optional[str]) -> Optional[datetime]:
    if not since:
        return None
    try:
        parsed = datetime.fromisoformat(since.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationIssue("since must be an ISO-8601 timestamp", field="since", error_type="invalid") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _message_dict(row: AgentMessage, compact: bool) -> dict:
    payload = {
        "id": row.id,
        "from": row.from_agent,
        "to": row.to_agent,
        "messageType": row.message_type,
        "priority": row.priority,
        "timestamp": _iso(row.created_at),
        "readAt": _iso(row.read_at),
    }
    if compact:
        payload["summary"] = summarize(row.content)
    else:
        payload["content"] = row.content
    return payload


def _inbox(db, tenant_id: str, agent_id: str, include_archived: bool = False):
    query = db.query(AgentMessage).filter(
        AgentMessage.tenant_id == tenant_id,
        AgentMessage.to_agent == agent_id,
    )
    if not include_archived:
        query = query.filter(AgentMessage.archived_at.is_(None))
    return query


def count_unread(db, tenant_id: str, agent_id: str) -> int:
    return int(
        _inbox(db, tenant_id, agent_id)
        .filter(AgentMessage.read_at.is_(None))
        .with_entities(func.count(AgentMessage.id))
        .scalar()
        or 0
    )


def unread_summaries(db, tenant_id: str, agent_id: str, limit: int = 5) -> list[dict]:
    rows = (
        _inbox(db, tenant_id, agent_id)
        .filter(AgentMessage.read_at.is_(None))
        .order_by(AgentMessage.created_at.desc(), AgentMessage.id.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id": row.id,
            "from": row.from_agent,
            "messageType": row.message_type,
            "priority": row.priority,
            "timestamp": _iso(row.created_at),
            "summary": summarize(row.content),
        }
        for row in rows
    ]


def _open_session():
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    return DB.SessionLocal()


@service_tool
def send_ai_message(
    to_agent: str,
    content: str,
    from_agent: Optional[str] = None,
    message_type: str = "direct",
    priority: str = "normal",
    context: Optional[RequestContext] = None,
) -> dict:
    context = _resolve(context)
    _validate_required_text(to_agent, "to_agent", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(content, "content", SANITIZER_MAX_CONTENT_LENGTH)
    _validate_optional_text(from_agent, "from_agent", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(message_type, "message_type", 50)
    if priority not in MESSAGE_PRIORITIES:
        raise ValidationIssue(
            f"priority must be one of {sorted(MESSAGE_PRIORITIES)}",
            field="priority",
            error_type="invalid",
        )

    sender = from_agent or _actor_for(context)
    enforce_clean("send_ai_message", [content], context, actor=sender, target=to_agent)

    db = _open_session()
    try:
        row = AgentMessage(
            tenant_id=context.tenant_id,
            from_agent=sender,
            to_agent=to_agent,
            content=content,
            message_type=message_type,
            priority=priority,
            created_at=_utcnow(),
        )
        db.add(row)
        db.commit()
        result = {
            "status": "sent",
            "messageId": row.id,
            "from": sender,
            "to": to_agent,
            "messageType": message_type,
            "priority": priority,
            "createdAt": _iso(row.created_at),
        }
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    audit(
        operation="send_ai_message",
        tenant_id=context.tenant_id,
        actor_id=sender,
        content=content,
        target=to_agent,
        target_count=1,
    )
    return result


@service_tool
def get_ai_messages(
    agent_id: str,
    message_type: Optional[str] = None,
    since: Optional[str] = None,
    limit: int = config.MESSAGE_LIMIT_DEFAULT,
    unread_only: bool = True,
    mark_as_read: bool = False,
    include_archived: bool = False,
    compact: bool = True,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Read an agent's inbox, newest first. Compact mode returns summaries only.
    """
    context = _resolve(context)
    _validate_required_text(agent_id, "agent_id", MAX_SHORT_TEXT_LENGTH)
    _validate_optional_text(message_type, "message_type", 50)
    if limit is None:
        limit = config.MESSAGE_LIMIT_DEFAULT
    if not isinstance(limit, int):
        raise ValidationIssue("limit must be an integer", field="limit", error_type="invalid_type")
    limit = max(1, min(limit, config.MESSAGE_LIMIT_MAX))
    since_at = _parse_since(since)

    db = _open_session()
    try:
        query = _inbox(db, context.tenant_id, agent_id, include_archived=include_archived)
        if message_type:
            query = query.filter(AgentMessage.message_type == message_type)
        if since_at is not None:
            query = query.filter(AgentMessage.created_at >= since_at)
        if unread_only:
            query = query.filter(AgentMessage.read_at.is_(None))
        total = query.count()
        rows = query.order_by(AgentMessage.created_at.desc(), AgentMessage.id.desc()).limit(limit).all()
        messages = [_message_dict(row, compact) for row in rows]
        if mark_as_read and rows:
            now = _utcnow()
            for row in rows:
                if row.read_at is None:
                    row.read_at = now
            db.commit()
    finally:
        db.close()

    payload = {
        "agentId": agent_id,
        "totalMessages": total,
        "returnedMessages": len(messages),
        "compact": compact,
        "filters": {
            "messageType": message_type or "all",
            "since": since or "beginning",
            "unreadOnly": unread_only,
            "limit": limit,
        },
        "messages": messages,
    }
    if compact:
        payload["hint"] = "Use get_message_detail(messageId) for full content"
    return payload


@service_tool
def get_message_detail(
    message_id: str,
    agent_id: str,
    mark_as_read: bool = True,
    context: Optional[RequestContext] = None,
) -> dict:
    """Return one message in full; only its recipient may read it."""
    context = _resolve(context)
    _validate_required_text(message_id, "message_id", 64)
    _validate_required_text(agent_id, "agent_id", MAX_SHORT_TEXT_LENGTH)

    db = _open_session()
    try:
        row = (
            _inbox(db, context.tenant_id, agent_id, include_archived=True)
            .filter(AgentMessage.id == message_id)
            .first()
        )
        if row is None:
            raise NotFound(f"Message '{message_id}' not found")
        if mark_as_read and row.read_at is None:
            row.read_at = _utcnow()
            db.commit()
        payload = _message_dict(row, compact=False)
        payload["summary"] = summarize(row.content)
    finally:
        db.close()
    return payload


@service_tool
def mark_messages_read(
    agent_id: str,
    message_ids: Optional[list[str]] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    context = _resolve(context)
    _validate_required_text(agent_id, "agent_id", MAX_SHORT_TEXT_LENGTH)
    _validate_string_list(message_ids, "message_ids", MAX_LIST_ITEMS, 64)

    db = _open_session()
    try:
        query = _inbox(db, context.tenant_id, agent_id).filter(AgentMessage.read_at.is_(None))
        if message_ids:
            query = query.filter(AgentMessage.id.in_(message_ids))
        marked = query.update({AgentMessage.read_at: _utcnow()}, synchronize_session=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    return {
        "status": "ok",
        "agentId": agent_id,
        "markedAsRead": marked,
        "scope": "specific" if message_ids else "all_unread",
    }


@service_tool
def archive_messages(
    agent_id: str,
    older_than_days: int = 30,
    context: Optional[RequestContext] = None,
) -> dict:
    context = _resolve(context)
    _validate_required_text(agent_id, "agent_id", MAX_SHORT_TEXT_LENGTH)
    if not isinstance(older_than_days, int) or older_than_days < 0:
        raise ValidationIssue(
            "older_than_days must be a non-negative integer",
            field="older_than_days",
            error_type="out_of_range",
        )

    cutoff = _utcnow() - timedelta(days=older_than_days)
    db = _open_session()
    try:
        archived = (
            _inbox(db, context.tenant_id, agent_id)
            .filter(AgentMessage.created_at <= cutoff)
            .update({AgentMessage.archived_at: _utcnow()}, synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    return {
        "status": "ok",
        "agentId": agent_id,
        "archived": archived,
        "olderThanDays": older_than_days,
    }


__all__ = [
    "archive_messages",
    "count_unread",
    "get_ai_messages",
    "get_message_detail",
    "mark_messages_read",
    "send_ai_message",
    "summarize",
    "unread_summaries",
]
