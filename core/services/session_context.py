"""
Session context assembler.

Builds tiered (hot / warm / cold) context bundles for an agent and trims them
to a token budget with a fixed drop sequence, so a smaller budget always
drops a superset of what a larger one drops.
"""

from __future__ import annotations

import html
import json
import math
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy import or_, update

import core.config as config
from core.context import RequestContext
from core.db import DB
from core.errors import Forbidden, ValidationIssue
from core.graph_types import view_of
from core.models import MemoryRecord, MemoryType, SessionHandoff
from core.services.agent_memory import learning_dict, load_profile, recent_learnings
from core.services.authorization import authorize_read
from core.services.memory_shared import (
    MAX_SHORT_TEXT_LENGTH,
    logger,
    service_tool,
    _iso,
    _resolve,
    _utcnow,
    _validate_optional_text,
    _validate_required_text,
)
from core.services.messages import count_unread
from core.services.sensitivity import is_visible

DEPTH_HOT = "hot"
DEPTH_WARM = "warm"
DEPTH_COLD = "cold"
DEPTHS = (DEPTH_HOT, DEPTH_WARM, DEPTH_COLD)

GUARDRAIL_ENTITY_TYPE = "guardrail"
DECISION_ENTITY_TYPE = "decision"

STEP_COLD_HISTORY = "cold_history"
STEP_PROJECT_SUMMARY = "project_summary"
STEP_WARM_OBSERVATIONS = "warm_observations"
STEP_GUARDRAILS = "guardrails"
STEP_IDENTITY_LEARNINGS = "identity_learnings"


# =============================================================================
# Provenance wrapping and token estimation
# =============================================================================

def wrap_content(content: Any, source: str, record_id: Any, trust: str) -> str:
    """Wrap recalled content in a provenance tag; attributes and body are escaped."""
    return (
        f'<neural_memory source="{html.escape(str(source), quote=True)}"'
        f' id="{html.escape(str(record_id), quote=True)}"'
        f' trust="{html.escape(str(trust), quote=True)}">'
        f"{html.escape(str(content if content is not None else ''), quote=False)}"
        "</neural_memory>"
    )


def default_token_estimator(payload: Any) -> int:
    serialized = json.dumps(payload, default=str, sort_keys=True)
    return math.ceil(len(serialized) / max(1, config.CONTEXT_CHARS_PER_TOKEN))


_token_estimator: Callable[[Any], int] = default_token_estimator


def set_token_estimator(estimator: Optional[Callable[[Any], int]]) -> Callable[[Any], int]:
    """Swap the estimator; None restores the default. Returns the previous one."""
    global _token_estimator
    previous = _token_estimator
    _token_estimator = estimator or default_token_estimator
    return previous


def estimate_tokens(payload: Any) -> int:
    return int(_token_estimator(payload))


# =============================================================================
# Section builders
# =============================================================================

def _visible_observations(db, tenant_id: str, entity_name: str, permissions: frozenset, limit=None, since=None):
    query = db.query(MemoryRecord).filter(
        MemoryRecord.tenant_id == tenant_id,
        MemoryRecord.memory_type == MemoryType.observation,
        MemoryRecord.name == entity_name,
    )
    if since is not None:
        query = query.filter(MemoryRecord.created_at >= since)
    query = query.order_by(MemoryRecord.created_at.desc(), MemoryRecord.id.desc())
    visible = []
    for record in query:
        view = view_of(record)
        if not is_visible(view, permissions):
            continue
        visible.append(view)
        if limit is not None and len(visible) >= limit:
            break
    return visible


def _wrapped_observation(view, trust: str = "memory") -> dict:
    payload = view.to_dict()
    payload["_wrapped"] = wrap_content("\n".join(view.contents), "observation", view.id, trust)
    return payload


def _identity_section(db, tenant_id: str, agent_id: str) -> dict:
    profile = load_profile(db, tenant_id, agent_id)
    learnings = []
    for learning in recent_learnings(db, tenant_id, agent_id, config.CONTEXT_LEARNING_LIMIT):
        item = learning_dict(learning)
        item.pop("id", None)
        item["_wrapped"] = wrap_content(learning.lesson, "learning", learning.id, "identity")
        learnings.append(item)
    preferences = dict(profile.preferences or {}) if profile is not None else {}
    return {
        "agentId": agent_id,
        "name": (profile.name if profile is not None else None) or agent_id,
        "capabilities": list(profile.capabilities or []) if profile is not None else [],
        "learnings": learnings,
        "preferences": preferences,
        "_preferencesWrapped": wrap_content(
            json.dumps(preferences, sort_keys=True), "preferences", agent_id, "identity"
        ),
    }


def _guardrails_section(db, tenant_id: str, permissions: frozenset) -> list[dict]:
    rows = (
        db.query(MemoryRecord)
        .filter(
            MemoryRecord.tenant_id == tenant_id,
            MemoryRecord.memory_type == MemoryType.entity,
            MemoryRecord.kind == GUARDRAIL_ENTITY_TYPE,
        )
        .order_by(MemoryRecord.created_at.desc(), MemoryRecord.id.desc())
        .limit(config.CONTEXT_GUARDRAIL_LIMIT)
        .all()
    )
    guardrails = []
    for row in rows:
        observations = _visible_observations(db, tenant_id, row.name, permissions)
        guardrails.append(
            {
                "name": row.name,
                "entityType": row.kind,
                "observations": [_wrapped_observation(view, trust="policy") for view in observations],
            }
        )
    return guardrails


def handoff_dict(handoff: SessionHandoff) -> dict:
    open_items = list(handoff.open_items or [])
    return {
        "id": handoff.id,
        "projectId": handoff.project_id,
        "fromAgent": handoff.from_agent,
        "summary": handoff.summary,
        "openItems": open_items,
        "createdAt": _iso(handoff.created_at),
        "_wrapped": wrap_content(handoff.summary, "handoff", handoff.project_id, "agent"),
        "_openItemsWrapped": [
            wrap_content(item, "handoff_item", handoff.project_id, "agent") for item in open_items
        ],
    }


def consume_handoff(db, tenant_id: str, project_id: str, agent_id: str) -> Optional[dict]:
    """
    Claim the active, unconsumed handoff for a project. The conditional update
    guarantees that at most one caller ever receives a given handoff.
    """
    handoff = (
        db.query(SessionHandoff)
        .filter(
            SessionHandoff.tenant_id == tenant_id,
            SessionHandoff.project_id == project_id,
            SessionHandoff.active == 1,
            SessionHandoff.consumed_at.is_(None),
        )
        .order_by(SessionHandoff.created_at.desc(), SessionHandoff.id.desc())
        .first()
    )
    if handoff is None:
        return None
    payload = handoff_dict(handoff)
    result = db.execute(
        update(SessionHandoff)
        .where(
            SessionHandoff.id == handoff.id,
            SessionHandoff.tenant_id == tenant_id,
            SessionHandoff.consumed_at.is_(None),
        )
        .values(consumed_at=_utcnow(), consumed_by=agent_id)
    )
    db.commit()
    if result.rowcount != 1:
        logger.info("handoff_already_consumed", extra={"tenant_id": tenant_id, "handoff_id": payload["id"]})
        return None
    return payload


def _related_names(db, tenant_id: str, entity_name: str) -> list[str]:
    rows = (
        db.query(MemoryRecord)
        .filter(
            MemoryRecord.tenant_id == tenant_id,
            MemoryRecord.memory_type == MemoryType.relation,
            or_(MemoryRecord.name == entity_name, MemoryRecord.target_name == entity_name),
        )
        .order_by(MemoryRecord.created_at.asc(), MemoryRecord.id.asc())
        .all()
    )
    names = []
    for row in rows:
        other = row.target_name if row.name == entity_name else row.name
        if other and other != entity_name and other not in names:
            names.append(other)
    return names


def _project_section(db, tenant_id: str, project_id: str, permissions: frozenset) -> dict:
    project = (
        db.query(MemoryRecord)
        .filter(
            MemoryRecord.tenant_id == tenant_id,
            MemoryRecord.memory_type == MemoryType.entity,
            MemoryRecord.name == project_id,
        )
        .first()
    )
    window_start = _utcnow() - timedelta(days=config.CONTEXT_RECENCY_WINDOW_DAYS)
    recent = _visible_observations(
        db,
        tenant_id,
        project_id,
        permissions,
        limit=config.CONTEXT_RECENT_OBSERVATION_LIMIT,
        since=window_start,
    )

    decisions = []
    related = _related_names(db, tenant_id, project_id)
    if related:
        decision_rows = (
            db.query(MemoryRecord)
            .filter(
                MemoryRecord.tenant_id == tenant_id,
                MemoryRecord.memory_type == MemoryType.entity,
                MemoryRecord.kind == DECISION_ENTITY_TYPE,
                MemoryRecord.name.in_(related),
            )
            .order_by(MemoryRecord.created_at.desc(), MemoryRecord.id.desc())
            .limit(config.CONTEXT_DECISION_LIMIT)
            .all()
        )
        for row in decision_rows:
            observations = _visible_observations(db, tenant_id, row.name, permissions)
            decisions.append(
                {
                    "name": row.name,
                    "id": row.id,
                    "createdAt": _iso(row.created_at),
                    "observations": [_wrapped_observation(view) for view in observations],
                }
            )

    summary = None
    if project is not None:
        summary = {
            "id": project.id,
            "name": project.name,
            "entityType": project.kind,
            "createdAt": _iso(project.created_at),
            "relatedEntities": len(related),
        }
    return {
        "summary": summary,
        "recentObservations": [_wrapped_observation(view) for view in recent],
        "decisions": decisions,
    }


def _history_section(db, tenant_id: str, anchor: str, permissions: frozenset) -> dict:
    observations = _visible_observations(db, tenant_id, anchor, permissions)
    related = _related_names(db, tenant_id, anchor)
    related_entities = []
    if related:
        rows = (
            db.query(MemoryRecord)
            .filter(
                MemoryRecord.tenant_id == tenant_id,
                MemoryRecord.memory_type == MemoryType.entity,
                MemoryRecord.name.in_(related),
            )
            .order_by(MemoryRecord.created_at.asc(), MemoryRecord.id.asc())
            .all()
        )
        related_entities = [view_of(row).to_dict() for row in rows]
    return {
        "observations": [_wrapped_observation(view) for view in observations],
        "relatedEntities": related_entities,
    }


# =============================================================================
# Budget enforcement
# =============================================================================

def _over(bundle: dict, max_tokens: int) -> bool:
    return estimate_tokens(bundle) > max_tokens


def apply_token_budget(bundle: dict, max_tokens: int) -> tuple[dict, list[str]]:
    """Run the fixed drop sequence until the bundle fits; returns dropped step names."""
    dropped: list[str] = []

    if _over(bundle, max_tokens) and "history" in bundle:
        bundle.pop("history")
        dropped.append(STEP_COLD_HISTORY)

    project = bundle.get("project")
    if _over(bundle, max_tokens) and project and ("summary" in project or "decisions" in project):
        project.pop("summary", None)
        project.pop("decisions", None)
        dropped.append(STEP_PROJECT_SUMMARY)

    if _over(bundle, max_tokens) and project and "recentObservations" in project:
        project.pop("recentObservations")
        dropped.append(STEP_WARM_OBSERVATIONS)

    guardrails = bundle.get("guardrails") or []
    trimmed = False
    while _over(bundle, max_tokens) and guardrails:
        guardrails.pop()
        trimmed = True
    if trimmed:
        dropped.append(STEP_GUARDRAILS)

    learnings = bundle["identity"]["learnings"]
    trimmed = False
    while _over(bundle, max_tokens) and len(learnings) > config.CONTEXT_MIN_LEARNINGS:
        learnings.pop()
        trimmed = True
    if trimmed:
        dropped.append(STEP_IDENTITY_LEARNINGS)

    return bundle, dropped


# =============================================================================
# Public entry points
# =============================================================================

def _resolve_depth(depth: Optional[str], project_id: Optional[str]) -> str:
    if depth is None:
        return DEPTH_WARM if project_id else DEPTH_HOT
    if depth not in DEPTHS:
        raise ValidationIssue(f"depth must be one of {list(DEPTHS)}", field="depth", error_type="invalid")
    return depth


def build_agent_context(
    db,
    context: RequestContext,
    agent_id: str,
    project_id: Optional[str],
    depth: str,
    max_tokens: int,
) -> dict:
    authorization = authorize_read(context)
    if not authorization.authorized:
        raise Forbidden(authorization.reason)
    permissions = authorization.permissions
    tenant_id = context.tenant_id

    bundle: dict = {
        "agentId": agent_id,
        "projectId": project_id,
        "identity": _identity_section(db, tenant_id, agent_id),
        "unreadMessages": count_unread(db, tenant_id, agent_id),
        "guardrails": _guardrails_section(db, tenant_id, permissions),
    }
    if project_id:
        bundle["handoff"] = consume_handoff(db, tenant_id, project_id, agent_id)
    if depth in (DEPTH_WARM, DEPTH_COLD) and project_id:
        bundle["project"] = _project_section(db, tenant_id, project_id, permissions)
    if depth == DEPTH_COLD:
        bundle["history"] = _history_section(db, tenant_id, project_id or agent_id, permissions)

    bundle, dropped = apply_token_budget(bundle, max_tokens)
    bundle["meta"] = {
        "depth": depth,
        "maxTokens": max_tokens,
        "tokenEstimate": estimate_tokens(bundle),
        "truncated": bool(dropped),
        "sectionsDropped": dropped,
    }
    return bundle


def validate_max_tokens(max_tokens: Optional[int]) -> int:
    if max_tokens is None:
        return config.CONTEXT_DEFAULT_MAX_TOKENS
    if not isinstance(max_tokens, int) or isinstance(max_tokens, bool) or max_tokens <= 0:
        raise ValidationIssue("max_tokens must be a positive integer", field="max_tokens", error_type="out_of_range")
    return max_tokens


@service_tool
def get_agent_context(
    agent_id: str,
    project_id: Optional[str] = None,
    depth: Optional[str] = None,
    max_tokens: Optional[int] = config.CONTEXT_DEFAULT_MAX_TOKENS,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Assemble an agent's context bundle.

    Depth defaults to ``hot`` without a project and ``warm`` with one. Loading
    a project consumes its pending handoff.
    """
    context = _resolve(context)
    _validate_required_text(agent_id, "agent_id", MAX_SHORT_TEXT_LENGTH)
    _validate_optional_text(project_id, "project_id", MAX_SHORT_TEXT_LENGTH)
    depth = _resolve_depth(depth, project_id)
    max_tokens = validate_max_tokens(max_tokens)

    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    db = DB.SessionLocal()
    try:
        return build_agent_context(db, context, agent_id, project_id, depth, max_tokens)
    finally:
        db.close()


__all__ = [
    "DEPTHS",
    "apply_token_budget",
    "build_agent_context",
    "consume_handoff",
    "default_token_estimator",
    "estimate_tokens",
    "get_agent_context",
    "handoff_dict",
    "set_token_estimator",
    "wrap_content",
]
