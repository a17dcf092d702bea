"""
Graph store services - entity, observation and relation writes plus search.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import or_

import core.config as config
from core.audit import audit
from core.context import RequestContext
from core.db import DB
from core.errors import NotFound, ValidationIssue
from core.graph_types import vector_document, view_of
from core.models import TOMBSTONE_STORE, MemoryRecord, MemoryType
from core.services.authorization import GRAPH_VIEW, require_read, require_write
from core.services.graph_export import invalidate_export_cache
from core.services.memory_shared import (
    MAX_BATCH_ITEMS,
    MAX_LIST_ITEMS,
    MAX_QUERY_LENGTH,
    MAX_SHORT_TEXT_LENGTH,
    SANITIZER_MAX_CONTENT_LENGTH,
    logger,
    service_tool,
    _actor_for,
    _resolve,
    _utcnow,
    _validate_limit,
    _validate_list,
    _validate_metadata,
    _validate_optional_text,
    _validate_required_text,
    _validate_string_list,
)
from core.services.sanitizer import enforce_clean
from core.services.tombstones import record_tombstone
from core.vector_index import get_vector_index

MAX_KIND_LENGTH = 100
SEARCH_TYPES = {"hybrid", "keyword", "semantic"}

SCORE_NAME_MATCH = 1.0
SCORE_TYPE_MATCH = 0.8
SCORE_VECTOR_ONLY = 0.6


# =============================================================================
# Lookups
# =============================================================================

def find_entity(db, tenant_id: str, name: str) -> Optional[MemoryRecord]:
    return (
        db.query(MemoryRecord)
        .filter(
            MemoryRecord.tenant_id == tenant_id,
            MemoryRecord.memory_type == MemoryType.entity,
            MemoryRecord.name == name,
        )
        .order_by(MemoryRecord.created_at.asc(), MemoryRecord.id.asc())
        .first()
    )


def ensure_entity(db, tenant_id: str, name: str, entity_type: str, actor: str) -> tuple[MemoryRecord, bool]:
    """Return the tenant's entity by name, creating it when missing."""
    existing = find_entity(db, tenant_id, name)
    if existing is not None:
        return existing, False
    now = _utcnow()
    record = MemoryRecord(
        tenant_id=tenant_id,
        memory_type=MemoryType.entity,
        name=name,
        kind=entity_type,
        contents=[],
        created_by=actor,
        created_at=now,
        updated_at=now,
    )
    db.add(record)
    db.flush()
    return record, True


def new_observation(
    tenant_id: str,
    entity_name: str,
    contents: list[str],
    actor: str,
    message_type: Optional[str] = None,
    sensitive: bool = False,
) -> MemoryRecord:
    now = _utcnow()
    return MemoryRecord(
        tenant_id=tenant_id,
        memory_type=MemoryType.observation,
        name=entity_name,
        contents=list(contents),
        message_type=message_type,
        sensitive=bool(sensitive),
        created_by=actor,
        created_at=now,
        updated_at=now,
    )


def mirror_stores(documents: list[dict], tenant_id: str) -> int:
    """Push documents to the vector index; failures are tombstoned for replay and counted."""
    index = get_vector_index()
    failed = []
    for document in documents:
        try:
            index.store(document)
        except Exception as exc:
            failed.append((document["id"], str(exc)))
            logger.warning(
                "vector_index_store_failed",
                extra={"external_id": document["id"], "tenant_id": tenant_id, "error": str(exc)},
            )
    if failed:
        db = _open_session()
        try:
            for external_id, error in failed:
                record_tombstone(db, external_id, tenant_id, error, operation=TOMBSTONE_STORE)
            db.commit()
        finally:
            db.close()
    return len(failed)


def _open_session():
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    return DB.SessionLocal()


# =============================================================================
# Validation
# =============================================================================

def _validate_entity_payload(entity: dict, index: int) -> None:
    if not isinstance(entity, dict):
        raise ValidationIssue(f"entities[{index}] must be an object", field="entities", error_type="invalid_type")
    _validate_required_text(entity.get("name"), "name", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(entity.get("entityType"), "entityType", MAX_KIND_LENGTH)
    _validate_string_list(
        entity.get("observations"),
        "observations",
        MAX_LIST_ITEMS,
        SANITIZER_MAX_CONTENT_LENGTH,
    )


def _validate_observation_payload(observation: dict, index: int) -> None:
    if not isinstance(observation, dict):
        raise ValidationIssue(
            f"observations[{index}] must be an object",
            field="observations",
            error_type="invalid_type",
        )
    _validate_required_text(observation.get("entityName"), "entityName", MAX_SHORT_TEXT_LENGTH)
    contents = observation.get("contents")
    _validate_list(contents, "contents", MAX_LIST_ITEMS, required=True)
    _validate_string_list(contents, "contents", MAX_LIST_ITEMS, SANITIZER_MAX_CONTENT_LENGTH)
    _validate_optional_text(observation.get("messageType"), "messageType", 50)
    sensitive = observation.get("sensitive")
    if sensitive is not None and not isinstance(sensitive, bool):
        raise ValidationIssue("sensitive must be a boolean", field="sensitive", error_type="invalid_type")


def _validate_relation_payload(relation: dict, index: int) -> None:
    if not isinstance(relation, dict):
        raise ValidationIssue(f"relations[{index}] must be an object", field="relations", error_type="invalid_type")
    _validate_required_text(relation.get("from"), "from", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(relation.get("to"), "to", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(relation.get("relationType"), "relationType", MAX_KIND_LENGTH)
    _validate_metadata(relation.get("properties"), "properties")


# =============================================================================
# Writes
# =============================================================================

@service_tool
def create_entities(entities: list[dict], context: Optional[RequestContext] = None) -> dict:
    """
    Create or upsert entities by name within the caller's tenant.

    Existing entities keep their id; the entityType is refreshed and any inline
    observations are appended as a new observation record.
    """
    context = _resolve(context)
    require_write("create_entity", context)
    _validate_list(entities, "entities", MAX_BATCH_ITEMS, required=True)
    for index, entity in enumerate(entities):
        _validate_entity_payload(entity, index)

    actor = _actor_for(context)
    for entity in entities:
        enforce_clean(
            "create_entity",
            [entity["name"], entity["entityType"], *(entity.get("observations") or [])],
            context,
            actor=actor,
            target=entity["name"],
        )

    tenant_id = context.tenant_id
    created = 0
    existing = 0
    results: list[dict] = []
    documents: list[dict] = []

    db = _open_session()
    try:
        for entity in entities:
            record, was_created = ensure_entity(db, tenant_id, entity["name"], entity["entityType"], actor)
            if was_created:
                created += 1
            else:
                existing += 1
                if record.kind != entity["entityType"]:
                    record.kind = entity["entityType"]
                record.updated_at = _utcnow()
            documents.append(vector_document(record))

            observations = entity.get("observations") or []
            if observations:
                observation = new_observation(
                    tenant_id,
                    record.name,
                    observations,
                    actor,
                    sensitive=bool(entity.get("sensitive", False)),
                )
                db.add(observation)
                db.flush()
                documents.append(vector_document(observation))

            payload = view_of(record).to_dict()
            payload["created"] = was_created
            payload["observationsAdded"] = len(observations)
            results.append(payload)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    invalidate_export_cache(tenant_id)
    mirror_stores(documents, tenant_id)
    for payload in results:
        audit(
            operation="create_entity",
            tenant_id=tenant_id,
            actor_id=actor,
            content=payload["name"],
            target=payload["name"],
            target_count=1 + payload["observationsAdded"],
        )

    return {"created": created, "existing": existing, "entities": results}


@service_tool
def add_observations(observations: list[dict], context: Optional[RequestContext] = None) -> dict:
    """Attach observations to existing entities."""
    context = _resolve(context)
    require_write("add_observation", context)
    _validate_list(observations, "observations", MAX_BATCH_ITEMS, required=True)
    for index, observation in enumerate(observations):
        _validate_observation_payload(observation, index)

    actor = _actor_for(context)
    for observation in observations:
        enforce_clean(
            "add_observation",
            observation["contents"],
            context,
            actor=actor,
            target=observation["entityName"],
        )

    tenant_id = context.tenant_id
    views = []
    documents = []
    db = _open_session()
    try:
        for observation in observations:
            if find_entity(db, tenant_id, observation["entityName"]) is None:
                raise NotFound(f"Entity '{observation['entityName']}' not found")
            record = new_observation(
                tenant_id,
                observation["entityName"],
                observation["contents"],
                actor,
                message_type=observation.get("messageType"),
                sensitive=bool(observation.get("sensitive", False)),
            )
            db.add(record)
            db.flush()
            views.append(view_of(record))
            documents.append(vector_document(record))
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    invalidate_export_cache(tenant_id)
    mirror_stores(documents, tenant_id)
    for view in views:
        audit(
            operation="add_observation",
            tenant_id=tenant_id,
            actor_id=actor,
            content="\n".join(view.contents),
            target=view.entity_name,
            target_count=len(view.contents),
        )

    return {"added": len(views), "observations": [view.to_dict() for view in views]}


@service_tool
def create_relations(relations: list[dict], context: Optional[RequestContext] = None) -> dict:
    """Create typed relations; exact duplicate triples are skipped."""
    context = _resolve(context)
    require_write("create_relation", context)
    _validate_list(relations, "relations", MAX_BATCH_ITEMS, required=True)
    for index, relation in enumerate(relations):
        _validate_relation_payload(relation, index)

    actor = _actor_for(context)
    for relation in relations:
        enforce_clean(
            "create_relation",
            [relation["from"], relation["to"], relation["relationType"]],
            context,
            actor=actor,
            target=relation["from"],
        )

    tenant_id = context.tenant_id
    views = []
    skipped = 0
    documents = []
    db = _open_session()
    try:
        for relation in relations:
            duplicate = (
                db.query(MemoryRecord.id)
                .filter(
                    MemoryRecord.tenant_id == tenant_id,
                    MemoryRecord.memory_type == MemoryType.relation,
                    MemoryRecord.name == relation["from"],
                    MemoryRecord.target_name == relation["to"],
                    MemoryRecord.kind == relation["relationType"],
                )
                .first()
            )
            if duplicate is not None:
                skipped += 1
                continue
            now = _utcnow()
            record = MemoryRecord(
                tenant_id=tenant_id,
                memory_type=MemoryType.relation,
                name=relation["from"],
                target_name=relation["to"],
                kind=relation["relationType"],
                contents=[],
                properties=relation.get("properties") or {},
                created_by=actor,
                created_at=now,
                updated_at=now,
            )
            db.add(record)
            db.flush()
            views.append(view_of(record))
            documents.append(vector_document(record))
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    if views:
        invalidate_export_cache(tenant_id)
        mirror_stores(documents, tenant_id)
    for view in views:
        audit(
            operation="create_relation",
            tenant_id=tenant_id,
            actor_id=actor,
            content=f"{view.source}|{view.relation_type}|{view.target}",
            target=view.source,
            target_count=1,
        )

    return {
        "created": len(views),
        "skipped": skipped,
        "relations": [view.to_dict() for view in views],
    }


# =============================================================================
# Search
# =============================================================================

def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _score(record: MemoryRecord, query: str) -> float:
    needle = query.casefold()
    if needle in (record.name or "").casefold():
        return SCORE_NAME_MATCH
    if needle in (record.kind or "").casefold():
        return SCORE_TYPE_MATCH
    return SCORE_VECTOR_ONLY


def _result_row(record: MemoryRecord, score: float, search_type: str, source: str) -> dict:
    payload = view_of(record).to_dict()
    payload["searchScore"] = score
    payload["searchType"] = search_type
    payload["sources"] = [source]
    return payload


def deduplicate_results(rows: list[dict]) -> list[dict]:
    """Collapse rows by lower-cased name, keeping the best score and merging sources."""
    best: dict[str, dict] = {}
    for row in rows:
        key = (row.get("name") or "").lower()
        current = best.get(key)
        if current is None:
            best[key] = dict(row, sources=list(row.get("sources") or []))
            continue
        merged_sources = list(current["sources"])
        for source in row.get("sources") or []:
            if source not in merged_sources:
                merged_sources.append(source)
        if row.get("searchScore", 0) > current.get("searchScore", 0):
            current = dict(row)
        current["sources"] = merged_sources
        best[key] = current
    return sorted(best.values(), key=lambda item: (-item.get("searchScore", 0), (item.get("name") or "").lower()))


@service_tool
def search_entities(
    query: str,
    limit: int = 50,
    search_type: str = "hybrid",
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Search entities by name and type, merging vector-index hits when available.
    """
    context = _resolve(context)
    require_read(context, GRAPH_VIEW)
    _validate_required_text(query, "query", MAX_QUERY_LENGTH)
    if search_type not in SEARCH_TYPES:
        raise ValidationIssue(
            f"search_type must be one of {sorted(SEARCH_TYPES)}",
            field="search_type",
            error_type="invalid",
        )
    limit = _validate_limit(limit, "limit", config.SEARCH_LIMIT_MAX)

    tenant_id = context.tenant_id
    rows: list[dict] = []
    db = _open_session()
    try:
        if search_type in {"hybrid", "keyword"}:
            pattern = _like_pattern(query)
            records = (
                db.query(MemoryRecord)
                .filter(
                    MemoryRecord.tenant_id == tenant_id,
                    MemoryRecord.memory_type == MemoryType.entity,
                    or_(
                        MemoryRecord.name.ilike(pattern, escape="\\"),
                        MemoryRecord.kind.ilike(pattern, escape="\\"),
                    ),
                )
                .order_by(MemoryRecord.created_at.asc(), MemoryRecord.id.asc())
                .limit(limit)
                .all()
            )
            rows.extend(_result_row(record, _score(record, query), search_type, "keyword") for record in records)

        if search_type in {"hybrid", "semantic"}:
            try:
                hits = get_vector_index().search(query, tenant_id, limit)
            except Exception as exc:
                hits = []
                logger.warning("vector_index_search_failed", extra={"tenant_id": tenant_id, "error": str(exc)})
            hit_names = {hit.get("name") for hit in hits if hit.get("name")}
            if hit_names:
                # Only names that resolve to an entity in this tenant are returned.
                records = (
                    db.query(MemoryRecord)
                    .filter(
                        MemoryRecord.tenant_id == tenant_id,
                        MemoryRecord.memory_type == MemoryType.entity,
                        MemoryRecord.name.in_(hit_names),
                    )
                    .all()
                )
                for record in records:
                    score = _score(record, query)
                    rows.append(_result_row(record, score, search_type, "vector"))
    finally:
        db.close()

    results = deduplicate_results(rows)[:limit]
    return {
        "query": query,
        "searchType": search_type,
        "totalResults": len(results),
        "deduplicated": len(rows) != len(results),
        "preDeduplicationCount": len(rows),
        "results": results,
    }


__all__ = [
    "add_observations",
    "create_entities",
    "create_relations",
    "deduplicate_results",
    "ensure_entity",
    "find_entity",
    "mirror_stores",
    "new_observation",
    "search_entities",
]
