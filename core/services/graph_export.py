"""
Graph export engine.

Produces cursor-paginated, permission-filtered graph snapshots and an ETag
fingerprinted by both the response content and the caller's permission set.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import and_, func, or_

import core.config as config
from core.audit import audit
from core.context import RequestContext
from core.db import DB
from core.errors import Forbidden, Unauthorized, ValidationIssue
from core.graph_types import Observation, view_of
from core.models import MemoryRecord, MemoryType
from core.services.authorization import GRAPH_OBSERVATIONS_VIEW, GRAPH_SENSITIVE_VIEW, authorize_read
from core.services.memory_shared import _iso, _resolve, _utcnow, logger, service_tool
from core.services.sensitivity import SENSITIVE_MESSAGE_TYPES, classify, is_visible

OBSERVATION_SCAN_BATCH = 200


@dataclass(frozen=True)
class ExportResult:
    body: Optional[dict]
    etag: str
    not_modified: bool = False


# =============================================================================
# ETag cache
# =============================================================================

class ExportETagCache:
    """Short-lived map from (tenant, policy fingerprint, query) to the last ETag."""

    def __init__(self, ttl_seconds: float):
        self._ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._entries: dict[tuple, tuple[str, float]] = {}

    def get(self, key: tuple) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            etag, expires_at = entry
            if expires_at <= time.monotonic():
                self._entries.pop(key, None)
                return None
            return etag

    def put(self, key: tuple, etag: str) -> None:
        with self._lock:
            self._entries[key] = (etag, time.monotonic() + self._ttl_seconds)

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        with self._lock:
            if tenant_id is None:
                self._entries.clear()
                return
            for key in [key for key in self._entries if key[0] == tenant_id]:
                self._entries.pop(key, None)


export_cache = ExportETagCache(config.GRAPH_EXPORT_ETAG_TTL_SECONDS)


def invalidate_export_cache(tenant_id: Optional[str] = None) -> None:
    export_cache.invalidate(tenant_id)


# =============================================================================
# Cursor and fingerprint helpers
# =============================================================================

def encode_cursor(created_at: datetime, record_id: str) -> str:
    payload = json.dumps({"c": created_at.isoformat(), "i": record_id}, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
        created_at = datetime.fromisoformat(payload["c"])
        record_id = payload["i"]
        if not isinstance(record_id, str) or not record_id:
            raise ValueError("cursor id missing")
    except (ValueError, KeyError, TypeError, UnicodeError, binascii.Error) as exc:
        raise ValidationIssue("cursor is malformed", field="cursor", error_type="invalid") from exc
    return created_at, record_id


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return config.GRAPH_EXPORT_DEFAULT_LIMIT
    try:
        value = int(limit)
    except (TypeError, ValueError) as exc:
        raise ValidationIssue("limit must be an integer", field="limit", error_type="invalid_type") from exc
    return min(max(value, 1), config.GRAPH_EXPORT_MAX_LIMIT)


def permission_fingerprint(permissions: Iterable[str]) -> str:
    return ",".join(sorted(set(permissions)))


def compute_etag(body: dict, permissions: Iterable[str], max_updated_at: Optional[str] = None) -> str:
    """Hash the canonical response parts plus the caller's sorted permission set."""
    parts: list[str] = []
    for node in body.get("nodes") or []:
        parts.append(f"n:{node['name']}:{node['entityType']}:{node['observationCount']}")
    for link in body.get("links") or []:
        parts.append(f"l:{link['source']}:{link['target']}:{link['relationType']}")
    for observation in body.get("observations") or []:
        parts.append(f"o:{observation['entityName']}:{json.dumps(observation['contents'])}")
    if max_updated_at:
        parts.append(f"upd:{max_updated_at}")
    parts.append(f"perms:{permission_fingerprint(permissions)}")
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:32]
    return f'"{digest}"'


def _parse_since(updated_since: Optional[str]) -> Optional[datetime]:
    if not updated_since:
        return None
    try:
        parsed = datetime.fromisoformat(updated_since.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationIssue(
            "updatedSince must be an ISO-8601 timestamp",
            field="updatedSince",
            error_type="invalid",
        ) from exc
    # Stored timestamps are naive UTC.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _after_cursor(query, cursor: Optional[str]):
    if not cursor:
        return query
    created_at, record_id = decode_cursor(cursor)
    return query.filter(
        or_(
            MemoryRecord.created_at > created_at,
            and_(MemoryRecord.created_at == created_at, MemoryRecord.id > record_id),
        )
    )


def _typed(db, tenant_id: str, memory_type: MemoryType):
    return db.query(MemoryRecord).filter(
        MemoryRecord.tenant_id == tenant_id,
        MemoryRecord.memory_type == memory_type,
    )


def _ordered(query):
    return query.order_by(MemoryRecord.created_at.asc(), MemoryRecord.id.asc())


# =============================================================================
# Data assembly
# =============================================================================

def _count_visible_observations(db, tenant_id: str, permissions: frozenset, names: Optional[list[str]] = None) -> int:
    """
    Count the observations ``permissions`` may see.

    Sensitive-view callers get a plain SQL count. Everyone else has flagged rows
    and internal message types filtered in SQL, leaving only the content
    prefix check to run over the ``contents`` column.
    """
    if GRAPH_OBSERVATIONS_VIEW not in permissions or names == []:
        return 0
    scope = [MemoryRecord.tenant_id == tenant_id, MemoryRecord.memory_type == MemoryType.observation]
    if names is not None:
        scope.append(MemoryRecord.name.in_(names))

    if GRAPH_SENSITIVE_VIEW in permissions:
        return int(db.query(func.count(MemoryRecord.id)).filter(*scope).scalar() or 0)

    query = db.query(MemoryRecord.contents).filter(
        *scope,
        MemoryRecord.sensitive.is_(False),
        or_(
            MemoryRecord.message_type.is_(None),
            func.lower(func.trim(MemoryRecord.message_type)).notin_(sorted(SENSITIVE_MESSAGE_TYPES)),
        ),
    )
    total = 0
    for (contents,) in query.yield_per(OBSERVATION_SCAN_BATCH):
        if not classify({"contents": contents}):
            total += 1
    return total


def _full_export(
    db,
    tenant_id: str,
    limit: int,
    cursor: Optional[str],
    include_observations: bool,
    since: Optional[datetime],
    permissions: frozenset,
) -> tuple[dict, Optional[str]]:
    entity_query = _typed(db, tenant_id, MemoryType.entity)
    if since is not None:
        entity_query = entity_query.filter(MemoryRecord.updated_at >= since)
    entity_rows = _ordered(_after_cursor(entity_query, cursor)).limit(limit + 1).all()
    has_more = len(entity_rows) > limit
    entity_rows = entity_rows[:limit]
    names = [row.name for row in entity_rows]

    observation_counts: dict[str, int] = {}
    if names:
        counts = (
            db.query(MemoryRecord.name, func.count(MemoryRecord.id))
            .filter(
                MemoryRecord.tenant_id == tenant_id,
                MemoryRecord.memory_type == MemoryType.observation,
                MemoryRecord.name.in_(names),
            )
            .group_by(MemoryRecord.name)
            .all()
        )
        observation_counts = {name: count for name, count in counts}

    nodes = [
        {
            "name": row.name,
            "entityType": row.kind or "",
            "observationCount": int(observation_counts.get(row.name, 0)),
            "id": row.id,
            "createdAt": _iso(row.created_at),
        }
        for row in entity_rows
    ]

    links = []
    if names:
        relation_rows = _ordered(
            _typed(db, tenant_id, MemoryType.relation).filter(MemoryRecord.name.in_(names))
        ).all()
        links = [
            {
                "source": row.name,
                "target": row.target_name or "",
                "relationType": row.kind or "",
            }
            for row in relation_rows
        ]

    totals = {
        "nodes": _typed(db, tenant_id, MemoryType.entity).count(),
        "links": _typed(db, tenant_id, MemoryType.relation).count(),
    }

    body = {
        "nodes": nodes,
        "links": links,
        "nextCursor": encode_cursor(entity_rows[-1].created_at, entity_rows[-1].id) if has_more else None,
        "totals": totals,
    }

    if include_observations:
        observations = []
        if names:
            observation_rows = _ordered(
                _typed(db, tenant_id, MemoryType.observation).filter(MemoryRecord.name.in_(names))
            ).all()
            for row in observation_rows:
                view = view_of(row)
                if is_visible(view, permissions):
                    observations.append(view.to_dict())
        body["observations"] = observations
        totals["observations"] = _count_visible_observations(db, tenant_id, permissions)

    max_updated = max((row.updated_at for row in entity_rows if row.updated_at), default=None)
    return body, _iso(max_updated)


def _entity_export(
    db,
    tenant_id: str,
    entity_name: str,
    limit: int,
    cursor: Optional[str],
    permissions: frozenset,
) -> tuple[dict, Optional[str]]:
    query = _ordered(
        _after_cursor(
            _typed(db, tenant_id, MemoryType.observation).filter(MemoryRecord.name == entity_name),
            cursor,
        )
    )
    collected: list[Observation] = []
    has_more = False
    for record in query.yield_per(OBSERVATION_SCAN_BATCH):
        view = view_of(record)
        if not is_visible(view, permissions):
            continue
        if len(collected) == limit:
            has_more = True
            break
        collected.append(view)

    body = {
        "observations": [view.to_dict() for view in collected],
        "totals": {
            "observations": _count_visible_observations(db, tenant_id, permissions, [entity_name]),
        },
    }
    if has_more and collected:
        last = collected[-1]
        body["nextCursor"] = encode_cursor(last.created_at, last.id)
    return body, None


# =============================================================================
# Public entry point
# =============================================================================

def export_graph(
    context: Optional[RequestContext],
    *,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
    include_observations: bool = False,
    entity_name: Optional[str] = None,
    updated_since: Optional[str] = None,
    if_none_match: Optional[str] = None,
) -> ExportResult:
    """
    Build one export page for the caller's tenant.

    Raises ``Unauthorized`` without an identity and ``Forbidden`` when the caller
    asks for observations it may not read. A permission shortfall is never
    answered with an empty list.
    """
    if context is None:
        raise Unauthorized("A verified request identity is required")
    authorization = authorize_read(context)
    if not authorization.authorized:
        raise Forbidden(authorization.reason)
    permissions = authorization.permissions

    if (include_observations or entity_name) and GRAPH_OBSERVATIONS_VIEW not in permissions:
        raise Forbidden("graph:observations:view permission required for observation access")

    limit = clamp_limit(limit)
    since = _parse_since(updated_since)
    if cursor:
        decode_cursor(cursor)

    tenant_id = context.tenant_id
    cache_key = (
        tenant_id,
        permission_fingerprint(permissions),
        limit,
        cursor or "",
        bool(include_observations),
        entity_name or "",
        updated_since or "",
    )
    cached_etag = export_cache.get(cache_key)
    if if_none_match and cached_etag and if_none_match.strip() == cached_etag:
        return ExportResult(body=None, etag=cached_etag, not_modified=True)

    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    db = DB.SessionLocal()
    try:
        if entity_name:
            body, max_updated = _entity_export(db, tenant_id, entity_name, limit, cursor, permissions)
        else:
            body, max_updated = _full_export(
                db, tenant_id, limit, cursor, include_observations, since, permissions
            )
    finally:
        db.close()

    etag = compute_etag(body, permissions, max_updated)
    export_cache.put(cache_key, etag)
    body["generatedAt"] = _utcnow().isoformat() + "Z"

    audit(
        operation="graph_export",
        tenant_id=tenant_id,
        actor_id=context.actor(),
        content=json.dumps(
            {
                "includeObservations": bool(include_observations),
                "entityName": entity_name,
                "limit": limit,
                "cursor": cursor,
            },
            sort_keys=True,
        ),
        target=entity_name,
        target_count=len(body.get("nodes") or body.get("observations") or []),
    )
    logger.info(
        "graph_export",
        extra={"tenant_id": tenant_id, "limit": limit, "entity_mode": bool(entity_name)},
    )

    if if_none_match and if_none_match.strip() == etag:
        return ExportResult(body=None, etag=etag, not_modified=True)
    return ExportResult(body=body, etag=etag)


@service_tool
def export_graph_page(
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
    include_observations: bool = False,
    entity_name: Optional[str] = None,
    updated_since: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Tool form of ``export_graph``: the page body plus its ETag."""
    result = export_graph(
        _resolve(context),
        limit=limit,
        cursor=cursor,
        include_observations=include_observations,
        entity_name=entity_name,
        updated_since=updated_since,
    )
    return {**(result.body or {}), "etag": result.etag}


__all__ = [
    "ExportETagCache",
    "ExportResult",
    "clamp_limit",
    "compute_etag",
    "decode_cursor",
    "encode_cursor",
    "export_cache",
    "export_graph",
    "export_graph_page",
    "invalidate_export_cache",
    "permission_fingerprint",
]
