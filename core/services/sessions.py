"""
Session protocol services - begin_session / end_session.

A session opens by loading warm context (which claims the project's pending
handoff) and closes by replacing the project's active handoff and recording
learnings in a single transaction.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import IntegrityError

from core.audit import audit
from core.context import RequestContext
from core.db import DB
from core.graph_types import vector_document
from core.models import SessionHandoff
from core.notifications import notify
from core.services.agent_memory import add_learning, validate_learning
from core.services.authorization import require_write
from core.services.graph_export import invalidate_export_cache
from core.services.graph_store import ensure_entity, mirror_stores
from core.services.memory_shared import (
    MAX_BATCH_ITEMS,
    MAX_LIST_ITEMS,
    MAX_SHORT_TEXT_LENGTH,
    SANITIZER_MAX_CONTENT_LENGTH,
    logger,
    service_tool,
    _actor_for,
    _resolve,
    _utcnow,
    _validate_list,
    _validate_required_text,
    _validate_string_list,
)
from core.services.messages import count_unread, unread_summaries
from core.services.sanitizer import enforce_clean
from core.services.session_context import DEPTH_WARM, build_agent_context, validate_max_tokens

PROJECT_ENTITY_TYPE = "project"
UNREAD_SUMMARY_LIMIT = 5
HANDOFF_WRITE_ATTEMPTS = 2


def _open_session():
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    return DB.SessionLocal()


def _unread_hint(count: int) -> str:
    if count > UNREAD_SUMMARY_LIMIT:
        return f"{count - UNREAD_SUMMARY_LIMIT} more unread - use get_ai_messages(agentId) to retrieve"
    return "Use get_message_detail(messageId) for full content"


@service_tool
def begin_session(
    agent_id: str,
    project_id: str,
    max_tokens: Optional[int] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Open a working session on a project.

    Ensures the project entity exists, loads warm context and claims the
    pending handoff. A handoff is delivered to exactly one session.
    """
    context = _resolve(context)
    require_write("begin_session", context)
    _validate_required_text(agent_id, "agent_id", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(project_id, "project_id", MAX_SHORT_TEXT_LENGTH)
    max_tokens = validate_max_tokens(max_tokens)

    tenant_id = context.tenant_id
    actor = _actor_for(context, agent_id)
    enforce_clean("begin_session", [project_id], context, actor=actor, target=project_id)

    db = _open_session()
    try:
        project, created = ensure_entity(db, tenant_id, project_id, PROJECT_ENTITY_TYPE, actor)
        document = vector_document(project) if created else None
        db.commit()
        if document is not None:
            invalidate_export_cache(tenant_id)
            mirror_stores([document], tenant_id)

        bundle = build_agent_context(db, context, agent_id, project_id, DEPTH_WARM, max_tokens)
        handoff = bundle.pop("handoff", None)
        unread_total = count_unread(db, tenant_id, agent_id)
        summaries = unread_summaries(db, tenant_id, agent_id, UNREAD_SUMMARY_LIMIT)
    finally:
        db.close()

    notification_status = notify(f"{project_id} session open - {agent_id}")
    audit(
        operation="begin_session",
        tenant_id=tenant_id,
        actor_id=actor,
        content=project_id,
        target=project_id,
        target_count=1 if handoff else 0,
    )

    return {
        "status": "session_opened",
        "agentId": agent_id,
        "projectId": project_id,
        "handoff": handoff,
        "context": bundle,
        "unreadMessages": {
            "count": unread_total,
            "showing": len(summaries),
            "summaries": summaries,
            "hint": _unread_hint(unread_total),
        },
        "notificationStatus": notification_status,
    }


def write_handoff(
    tenant_id: str,
    project_id: str,
    agent_id: str,
    summary: str,
    open_items: list[str],
    learnings: list[dict],
) -> int:
    """
    Replace the project's active handoff and record learnings atomically.

    A concurrent writer can win the active slot between our deactivate and
    insert; the partial unique index rejects the loser, which retries once.
    """
    for attempt in range(1, HANDOFF_WRITE_ATTEMPTS + 1):
        db = _open_session()
        try:
            db.query(SessionHandoff).filter(
                SessionHandoff.tenant_id == tenant_id,
                SessionHandoff.project_id == project_id,
                SessionHandoff.active == 1,
            ).update({SessionHandoff.active: 0}, synchronize_session=False)
            handoff = SessionHandoff(
                tenant_id=tenant_id,
                project_id=project_id,
                from_agent=agent_id,
                summary=summary,
                open_items=list(open_items),
                created_at=_utcnow(),
                active=1,
            )
            db.add(handoff)
            for learning in learnings:
                add_learning(
                    db,
                    tenant_id,
                    agent_id,
                    learning["lesson"],
                    learning.get("context"),
                    learning.get("confidence"),
                )
            db.commit()
            return handoff.id
        except IntegrityError:
            db.rollback()
            if attempt >= HANDOFF_WRITE_ATTEMPTS:
                raise
            logger.warning(
                "handoff_write_conflict",
                extra={"tenant_id": tenant_id, "attempt": attempt},
            )
        finally:
            db.close()
    raise RuntimeError("handoff write retries exhausted")


@service_tool
def end_session(
    agent_id: str,
    project_id: str,
    summary: str,
    open_items: Optional[list[str]] = None,
    learnings: Optional[list[dict]] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Close a session: write the handoff for the next session and record learnings."""
    context = _resolve(context)
    require_write("end_session", context)
    _validate_required_text(agent_id, "agent_id", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(project_id, "project_id", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(summary, "summary", SANITIZER_MAX_CONTENT_LENGTH)
    _validate_string_list(open_items, "open_items", MAX_LIST_ITEMS, SANITIZER_MAX_CONTENT_LENGTH)
    _validate_list(learnings, "learnings", MAX_BATCH_ITEMS)
    for learning in learnings or []:
        validate_learning(learning)

    tenant_id = context.tenant_id
    actor = _actor_for(context, agent_id)
    enforce_clean("end_session", [summary, *(open_items or [])], context, actor=actor, target=project_id)
    for learning in learnings or []:
        enforce_clean(
            "end_session_learning",
            [learning.get("context"), learning["lesson"]],
            context,
            actor=actor,
            target=project_id,
        )

    handoff_id = write_handoff(
        tenant_id,
        project_id,
        agent_id,
        summary,
        open_items or [],
        learnings or [],
    )

    audit(
        operation="end_session",
        tenant_id=tenant_id,
        actor_id=actor,
        content=summary,
        target=project_id,
        target_count=len(learnings or []),
    )
    notification_status = notify(f"{project_id} session closed - {agent_id}")

    return {
        "status": "session_closed",
        "agentId": agent_id,
        "projectId": project_id,
        "handoffId": handoff_id,
        "summary": summary,
        "openItems": list(open_items or []),
        "learningsRecorded": len(learnings or []),
        "notificationStatus": notification_status,
    }


__all__ = ["begin_session", "end_session", "write_handoff"]
