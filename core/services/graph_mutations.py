"""
Graph mutation services - cascading deletes, observation removal and edits.

Relational deletes commit first; the vector-index mirror runs afterwards and
queues a tombstone for every id it could not clean up.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import or_

from core.audit import audit
from core.context import RequestContext
from core.db import DB
from core.errors import NotFound, ValidationIssue
from core.graph_types import vector_document, view_of
from core.models import TOMBSTONE_STORE, MemoryRecord, MemoryType
from core.services.authorization import require_mutation
from core.services.graph_export import invalidate_export_cache
from core.services.memory_shared import (
    MAX_LIST_ITEMS,
    MAX_SHORT_TEXT_LENGTH,
    SANITIZER_MAX_CONTENT_LENGTH,
    logger,
    service_tool,
    _actor_for,
    _resolve,
    _utcnow,
    _validate_index,
    _validate_reason,
    _validate_required_text,
    _validate_string_list,
)
from core.services.sanitizer import enforce_clean
from core.services.tombstones import mirror_deletes, record_tombstone
from core.vector_index import get_vector_index


def _open_session():
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    return DB.SessionLocal()


def _records(db, tenant_id: str, memory_type: MemoryType):
    return (
        db.query(MemoryRecord)
        .filter(MemoryRecord.tenant_id == tenant_id, MemoryRecord.memory_type == memory_type)
        .order_by(MemoryRecord.created_at.asc(), MemoryRecord.id.asc())
    )


def _delete_ids(db, tenant_id: str, ids: list[str]) -> int:
    if not ids:
        return 0
    return (
        db.query(MemoryRecord)
        .filter(MemoryRecord.tenant_id == tenant_id, MemoryRecord.id.in_(ids))
        .delete(synchronize_session=False)
    )


def _matches_any(contents, needles: list[str]) -> bool:
    haystack = [entry.casefold() for entry in contents or () if isinstance(entry, str)]
    for needle in needles:
        folded = needle.casefold()
        if any(folded in entry for entry in haystack):
            return True
    return False


@service_tool
def delete_entity(
    entity_name: str,
    dry_run: bool = False,
    reason: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Delete an entity with its observations and every relation touching it.
    """
    context = _resolve(context)
    require_mutation("delete_entity", context)
    _validate_required_text(entity_name, "entity_name", MAX_SHORT_TEXT_LENGTH)
    _validate_reason(reason)

    tenant_id = context.tenant_id
    actor = _actor_for(context)
    db = _open_session()
    try:
        entity_ids = [
            row.id
            for row in _records(db, tenant_id, MemoryType.entity).filter(MemoryRecord.name == entity_name)
        ]
        if not entity_ids:
            raise NotFound(f"Entity '{entity_name}' not found")
        observation_ids = [
            row.id
            for row in _records(db, tenant_id, MemoryType.observation).filter(MemoryRecord.name == entity_name)
        ]
        relation_ids = [
            row.id
            for row in _records(db, tenant_id, MemoryType.relation).filter(
                or_(MemoryRecord.name == entity_name, MemoryRecord.target_name == entity_name)
            )
        ]
        counts = {
            "entities": len(entity_ids),
            "observations": len(observation_ids),
            "relations": len(relation_ids),
        }

        if dry_run:
            return {
                "dryRun": True,
                "entityName": entity_name,
                "actor": actor,
                "targets": {**counts, "totalRows": sum(counts.values())},
                "entityIds": entity_ids,
                "observationIds": observation_ids,
                "relationIds": relation_ids,
            }

        try:
            _delete_ids(db, tenant_id, relation_ids)
            _delete_ids(db, tenant_id, observation_ids)
            _delete_ids(db, tenant_id, entity_ids)
            db.commit()
        except Exception:
            db.rollback()
            raise

        invalidate_export_cache(tenant_id)
        cleanup = mirror_deletes(db, entity_ids + observation_ids + relation_ids, tenant_id)
    finally:
        db.close()

    audit(
        operation="delete_entity",
        tenant_id=tenant_id,
        actor_id=actor,
        content=entity_name,
        target=entity_name,
        target_count=sum(counts.values()),
        reason=reason,
    )
    logger.info(
        "graph_entity_deleted",
        extra={"tenant_id": tenant_id, "actor": actor, "target_count": sum(counts.values())},
    )
    return {
        "status": "deleted",
        "entityName": entity_name,
        "actor": actor,
        "reason": reason,
        "deleted": counts,
        **cleanup,
    }


@service_tool
def remove_observations(
    entity_name: str,
    observation_ids: Optional[list[str]] = None,
    contains_any: Optional[list[str]] = None,
    dry_run: bool = False,
    reason: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Remove selected observations from one entity.

    ``contains_any`` matches literal substrings case-insensitively, so SQL
    wildcard characters in the needles carry no special meaning.
    """
    context = _resolve(context)
    require_mutation("remove_observations", context)
    _validate_required_text(entity_name, "entity_name", MAX_SHORT_TEXT_LENGTH)
    _validate_string_list(observation_ids, "observation_ids", MAX_LIST_ITEMS, 64)
    _validate_string_list(contains_any, "contains_any", MAX_LIST_ITEMS, SANITIZER_MAX_CONTENT_LENGTH)
    _validate_reason(reason)
    if not observation_ids and not contains_any:
        raise ValidationIssue(
            "Provide observation_ids or contains_any",
            field="observation_ids",
            error_type="required",
        )

    tenant_id = context.tenant_id
    actor = _actor_for(context)
    db = _open_session()
    try:
        query = _records(db, tenant_id, MemoryType.observation).filter(MemoryRecord.name == entity_name)
        if observation_ids:
            query = query.filter(MemoryRecord.id.in_(observation_ids))
        candidates = query.all()
        if contains_any:
            candidates = [row for row in candidates if _matches_any(row.contents, contains_any)]
        matched_ids = [row.id for row in candidates]

        if not matched_ids:
            return {"status": "no_match", "entityName": entity_name, "matchedObservations": 0}

        if dry_run:
            return {
                "dryRun": True,
                "entityName": entity_name,
                "actor": actor,
                "matchedObservations": len(matched_ids),
                "observationIds": matched_ids,
            }

        try:
            removed = _delete_ids(db, tenant_id, matched_ids)
            db.commit()
        except Exception:
            db.rollback()
            raise

        invalidate_export_cache(tenant_id)
        cleanup = mirror_deletes(db, matched_ids, tenant_id)
    finally:
        db.close()

    audit(
        operation="remove_observations",
        tenant_id=tenant_id,
        actor_id=actor,
        content=",".join(matched_ids),
        target=entity_name,
        target_count=removed,
        reason=reason,
    )
    return {
        "status": "removed",
        "entityName": entity_name,
        "actor": actor,
        "reason": reason,
        "removedObservations": removed,
        **cleanup,
    }


@service_tool
def update_observation(
    observation_id: str,
    new_content: str,
    content_index: Optional[int] = None,
    reason: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Replace an observation's content, or one entry of it, and re-index it.
    """
    context = _resolve(context)
    require_mutation("update_observation", context)
    _validate_required_text(observation_id, "observation_id", 64)
    _validate_required_text(new_content, "new_content", SANITIZER_MAX_CONTENT_LENGTH)
    _validate_reason(reason)
    _validate_index(content_index, "content_index")

    tenant_id = context.tenant_id
    actor = _actor_for(context)
    enforce_clean("update_observation", [new_content], context, actor=actor, target=observation_id)

    db = _open_session()
    try:
        record = (
            db.query(MemoryRecord)
            .filter(
                MemoryRecord.tenant_id == tenant_id,
                MemoryRecord.memory_type == MemoryType.observation,
                MemoryRecord.id == observation_id,
            )
            .first()
        )
        if record is None:
            raise NotFound(f"Observation '{observation_id}' not found")

        contents = list(record.contents or [])
        if content_index is None:
            contents = [new_content]
        else:
            if content_index < 0 or content_index >= len(contents):
                raise ValidationIssue(
                    f"content_index out of range (0..{len(contents) - 1})",
                    field="content_index",
                    error_type="out_of_range",
                )
            contents[content_index] = new_content

        try:
            record.contents = contents
            record.updated_at = _utcnow()
            db.commit()
        except Exception:
            db.rollback()
            raise

        entity_name = view_of(record).entity_name
        document = vector_document(record)
        invalidate_export_cache(tenant_id)

        reindexed = True
        try:
            get_vector_index().store(document)
        except Exception as exc:
            reindexed = False
            logger.warning(
                "vector_index_store_failed",
                extra={"external_id": observation_id, "tenant_id": tenant_id, "error": str(exc)},
            )
            record_tombstone(db, observation_id, tenant_id, str(exc), operation=TOMBSTONE_STORE)
            db.commit()
    finally:
        db.close()

    audit(
        operation="update_observation",
        tenant_id=tenant_id,
        actor_id=actor,
        content=new_content,
        target=entity_name,
        target_count=1,
        reason=reason,
    )
    return {
        "status": "updated",
        "observationId": observation_id,
        "actor": actor,
        "reason": reason,
        "updated": True,
        "weaviateReindexed": reindexed,
    }


@service_tool
def delete_observations_by_entity(
    entity_name: str,
    dry_run: bool = False,
    reason: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Delete every observation of an entity, keeping the entity itself."""
    context = _resolve(context)
    require_mutation("delete_observations_by_entity", context)
    _validate_required_text(entity_name, "entity_name", MAX_SHORT_TEXT_LENGTH)
    _validate_reason(reason)

    tenant_id = context.tenant_id
    actor = _actor_for(context)
    db = _open_session()
    try:
        observation_ids = [
            row.id
            for row in _records(db, tenant_id, MemoryType.observation).filter(MemoryRecord.name == entity_name)
        ]
        if not observation_ids:
            entity_exists = (
                _records(db, tenant_id, MemoryType.entity).filter(MemoryRecord.name == entity_name).first()
            )
            if entity_exists is None:
                raise NotFound(f"Entity '{entity_name}' not found")

        if dry_run:
            return {
                "dryRun": True,
                "entityName": entity_name,
                "actor": actor,
                "matchedObservations": len(observation_ids),
                "observationIds": observation_ids,
            }

        try:
            deleted = _delete_ids(db, tenant_id, observation_ids)
            db.commit()
        except Exception:
            db.rollback()
            raise

        invalidate_export_cache(tenant_id)
        cleanup = mirror_deletes(db, observation_ids, tenant_id)
    finally:
        db.close()

    audit(
        operation="delete_observations_by_entity",
        tenant_id=tenant_id,
        actor_id=actor,
        content=entity_name,
        target=entity_name,
        target_count=deleted,
        reason=reason,
    )
    return {
        "status": "deleted",
        "entityName": entity_name,
        "actor": actor,
        "reason": reason,
        "deletedObservations": deleted,
        **cleanup,
    }


__all__ = [
    "delete_entity",
    "delete_observations_by_entity",
    "remove_observations",
    "update_observation",
]
