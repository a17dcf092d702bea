"""
Per-agent identity services - registration, learnings and preferences.
"""

from __future__ import annotations

import json
from typing import Optional

from core.audit import audit
from core.context import RequestContext
from core.db import DB
from core.errors import ValidationIssue
from core.models import AgentLearning, AgentProfile
from core.services.memory_shared import (
    MAX_LIST_ITEMS,
    MAX_SHORT_TEXT_LENGTH,
    SANITIZER_MAX_CONTENT_LENGTH,
    service_tool,
    _actor_for,
    _iso,
    _resolve,
    _utcnow,
    _validate_confidence,
    _validate_metadata,
    _validate_optional_text,
    _validate_required_text,
    _validate_string_list,
)
from core.services.sanitizer import enforce_clean

DEFAULT_CONFIDENCE = 0.8
INDIVIDUAL_MEMORY_LEARNING_LIMIT = 50


def load_profile(db, tenant_id: str, agent_id: str) -> Optional[AgentProfile]:
    return (
        db.query(AgentProfile)
        .filter(AgentProfile.tenant_id == tenant_id, AgentProfile.agent_id == agent_id)
        .first()
    )


def _ensure_profile(db, tenant_id: str, agent_id: str, actor: str) -> tuple[AgentProfile, bool]:
    profile = load_profile(db, tenant_id, agent_id)
    if profile is not None:
        return profile, False
    now = _utcnow()
    profile = AgentProfile(
        tenant_id=tenant_id,
        agent_id=agent_id,
        capabilities=[],
        metadata_={},
        preferences={},
        registered_by=actor,
        created_at=now,
        updated_at=now,
    )
    db.add(profile)
    return profile, True


def recent_learnings(db, tenant_id: str, agent_id: str, limit: int) -> list[AgentLearning]:
    return (
        db.query(AgentLearning)
        .filter(AgentLearning.tenant_id == tenant_id, AgentLearning.agent_id == agent_id)
        .order_by(AgentLearning.created_at.desc(), AgentLearning.id.desc())
        .limit(limit)
        .all()
    )


def add_learning(
    db,
    tenant_id: str,
    agent_id: str,
    lesson: str,
    context_text: Optional[str] = None,
    confidence: Optional[float] = None,
) -> AgentLearning:
    learning = AgentLearning(
        tenant_id=tenant_id,
        agent_id=agent_id,
        context=context_text,
        lesson=lesson,
        confidence=DEFAULT_CONFIDENCE if confidence is None else float(confidence),
        created_at=_utcnow(),
    )
    db.add(learning)
    return learning


def validate_learning(learning: dict, field: str = "learnings") -> None:
    if not isinstance(learning, dict):
        raise ValidationIssue(f"{field} entries must be objects", field=field, error_type="invalid_type")
    _validate_required_text(learning.get("lesson"), "lesson", SANITIZER_MAX_CONTENT_LENGTH)
    _validate_optional_text(learning.get("context"), "context", SANITIZER_MAX_CONTENT_LENGTH)
    confidence = learning.get("confidence")
    if confidence is not None:
        _validate_confidence(confidence, "confidence")


def learning_dict(learning: AgentLearning) -> dict:
    return {
        "id": learning.id,
        "context": learning.context,
        "lesson": learning.lesson,
        "confidence": learning.confidence,
        "createdAt": _iso(learning.created_at),
    }


def _open_session():
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    return DB.SessionLocal()


@service_tool
def register_agent(
    agent_id: str,
    name: Optional[str] = None,
    capabilities: Optional[list[str]] = None,
    endpoint: Optional[str] = None,
    metadata: Optional[dict] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Create or refresh an agent profile in the caller's tenant."""
    context = _resolve(context)
    _validate_required_text(agent_id, "agent_id", MAX_SHORT_TEXT_LENGTH)
    _validate_optional_text(name, "name", MAX_SHORT_TEXT_LENGTH)
    _validate_string_list(capabilities, "capabilities", MAX_LIST_ITEMS, MAX_SHORT_TEXT_LENGTH)
    _validate_optional_text(endpoint, "endpoint", 1000)
    _validate_metadata(metadata, "metadata")

    actor = _actor_for(context, agent_id)
    enforce_clean(
        "register_agent",
        [name, *(capabilities or []), json.dumps(metadata or {}, sort_keys=True)],
        context,
        actor=actor,
        target=agent_id,
    )

    db = _open_session()
    try:
        profile, created = _ensure_profile(db, context.tenant_id, agent_id, actor)
        if name is not None:
            profile.name = name
        if capabilities is not None:
            profile.capabilities = list(capabilities)
        if endpoint is not None:
            profile.endpoint = endpoint
        if metadata is not None:
            profile.metadata_ = {**(profile.metadata_ or {}), **metadata}
        profile.updated_at = _utcnow()
        db.commit()
        result = {
            "status": "registered",
            "agentId": agent_id,
            "name": profile.name or agent_id,
            "capabilities": list(profile.capabilities or []),
            "registeredBy": profile.registered_by,
            "created": created,
        }
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    audit(
        operation="register_agent",
        tenant_id=context.tenant_id,
        actor_id=actor,
        content=agent_id,
        target=agent_id,
        target_count=1,
    )
    return result


@service_tool
def record_learning(
    lesson: str,
    context_text: Optional[str] = None,
    confidence: float = DEFAULT_CONFIDENCE,
    agent_id: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    context = _resolve(context)
    _validate_optional_text(agent_id, "agent_id", MAX_SHORT_TEXT_LENGTH)
    validate_learning({"lesson": lesson, "context": context_text, "confidence": confidence}, field="lesson")

    agent = agent_id or _actor_for(context)
    enforce_clean("record_learning", [lesson, context_text], context, actor=agent, target=agent)

    db = _open_session()
    try:
        learning = add_learning(db, context.tenant_id, agent, lesson, context_text, confidence)
        db.commit()
        learning_id = learning.id
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    audit(
        operation="record_learning",
        tenant_id=context.tenant_id,
        actor_id=agent,
        content=lesson,
        target=agent,
        target_count=1,
    )
    return {"status": "ok", "agentId": agent, "learningId": learning_id}


@service_tool
def set_preferences(
    preferences: dict,
    agent_id: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Merge preference keys into the agent profile."""
    context = _resolve(context)
    _validate_optional_text(agent_id, "agent_id", MAX_SHORT_TEXT_LENGTH)
    if not isinstance(preferences, dict) or not preferences:
        raise ValidationIssue("preferences must be a non-empty object", field="preferences", error_type="required")
    _validate_metadata(preferences, "preferences")

    agent = agent_id or _actor_for(context)
    enforce_clean(
        "set_preferences",
        [json.dumps(preferences, sort_keys=True)],
        context,
        actor=agent,
        target=agent,
    )

    db = _open_session()
    try:
        profile, _ = _ensure_profile(db, context.tenant_id, agent, _actor_for(context, agent))
        profile.preferences = {**(profile.preferences or {}), **preferences}
        profile.updated_at = _utcnow()
        db.commit()
        merged = dict(profile.preferences or {})
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    audit(
        operation="set_preferences",
        tenant_id=context.tenant_id,
        actor_id=agent,
        content=json.dumps(preferences, sort_keys=True),
        target=agent,
        target_count=len(preferences),
    )
    return {"status": "ok", "agentId": agent, "preferences": merged}


@service_tool
def get_individual_memory(agent_id: Optional[str] = None, context: Optional[RequestContext] = None) -> dict:
    context = _resolve(context)
    _validate_optional_text(agent_id, "agent_id", MAX_SHORT_TEXT_LENGTH)
    agent = agent_id or _actor_for(context)

    db = _open_session()
    try:
        profile = load_profile(db, context.tenant_id, agent)
        learnings = recent_learnings(db, context.tenant_id, agent, INDIVIDUAL_MEMORY_LEARNING_LIMIT)
        return {
            "agentId": agent,
            "profile": None
            if profile is None
            else {
                "name": profile.name,
                "capabilities": list(profile.capabilities or []),
                "endpoint": profile.endpoint,
                "metadata": dict(profile.metadata_ or {}),
                "registeredBy": profile.registered_by,
                "createdAt": _iso(profile.created_at),
                "updatedAt": _iso(profile.updated_at),
            },
            "preferences": dict(profile.preferences or {}) if profile is not None else {},
            "learnings": [learning_dict(learning) for learning in learnings],
        }
    finally:
        db.close()


__all__ = [
    "add_learning",
    "get_individual_memory",
    "learning_dict",
    "load_profile",
    "recent_learnings",
    "record_learning",
    "register_agent",
    "set_preferences",
    "validate_learning",
]
