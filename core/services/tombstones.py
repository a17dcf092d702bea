"""
Vector-index tombstone queue.

A tombstone records an id whose vector-index mirror failed, along with the
operation to replay. The sweep retries them oldest-first, clearing rows that
succeed and counting failures on the rest. A store is replayed from the current
row, so the index converges on the latest contents; a row deleted since is
removed from the index instead.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as postgres_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

import core.config as config
from core.db import DB, dialect_name
from core.graph_types import vector_document
from core.models import TOMBSTONE_DELETE, TOMBSTONE_STORE, MemoryRecord, VectorTombstone
from core.services.memory_shared import _utcnow, logger
from core.vector_index import VectorIndex, get_vector_index

MAX_ERROR_LENGTH = 1000


def record_tombstone(
    db,
    external_id: str,
    tenant_id: str,
    error: Optional[str] = None,
    operation: str = TOMBSTONE_DELETE,
) -> None:
    """Insert-or-ignore a tombstone row; re-queuing a known id is a no-op."""
    values = {
        "external_id": external_id,
        "tenant_id": tenant_id,
        "operation": operation,
        "failed_at": _utcnow(),
        "retry_count": 0,
        "last_error": (error or "")[:MAX_ERROR_LENGTH] or None,
    }
    dialect = dialect_name(db)
    if dialect == "sqlite":
        stmt = sqlite_insert(VectorTombstone).values(**values).on_conflict_do_nothing(
            index_elements=["external_id"]
        )
    elif dialect == "postgresql":
        stmt = postgres_insert(VectorTombstone).values(**values).on_conflict_do_nothing(
            index_elements=["external_id"]
        )
    else:
        exists = db.query(VectorTombstone.id).filter(VectorTombstone.external_id == external_id).first()
        if exists:
            return
        db.add(VectorTombstone(**values))
        return
    db.execute(stmt)


def mirror_deletes(db, external_ids: list[str], tenant_id: str, index: Optional[VectorIndex] = None) -> dict:
    """
    Delete ids from the vector index after the relational commit.
    Failures are tombstoned and counted, never raised.
    """
    index = index or get_vector_index()
    cleaned = 0
    failures = 0
    for external_id in external_ids:
        try:
            index.delete(external_id)
            cleaned += 1
        except Exception as exc:
            failures += 1
            logger.warning(
                "vector_index_delete_failed",
                extra={"external_id": external_id, "tenant_id": tenant_id, "error": str(exc)},
            )
            record_tombstone(db, external_id, tenant_id, str(exc))
    if failures:
        db.commit()
    return {"weaviateCleanup": cleaned, "weaviateFailures": failures}


def tombstone_backlog(db, tenant_id: Optional[str] = None) -> int:
    query = db.query(func.count(VectorTombstone.id))
    if tenant_id:
        query = query.filter(VectorTombstone.tenant_id == tenant_id)
    return int(query.scalar() or 0)


def _replay(db, index: VectorIndex, row: VectorTombstone) -> None:
    if row.operation == TOMBSTONE_STORE:
        record = (
            db.query(MemoryRecord)
            .filter(MemoryRecord.tenant_id == row.tenant_id, MemoryRecord.id == row.external_id)
            .first()
        )
        if record is not None:
            index.store(vector_document(record))
            return
    index.delete(row.external_id)


def _sweep(db, index: VectorIndex, batch_limit: int, max_failures: int) -> dict:
    rows = (
        db.query(VectorTombstone)
        .order_by(VectorTombstone.failed_at.asc(), VectorTombstone.id.asc())
        .limit(batch_limit)
        .all()
    )
    attempted = 0
    cleared = 0
    failed = 0
    for row in rows:
        if failed >= max_failures:
            break
        attempted += 1
        try:
            _replay(db, index, row)
        except Exception as exc:
            failed += 1
            db.query(VectorTombstone).filter(VectorTombstone.id == row.id).update(
                {
                    VectorTombstone.retry_count: VectorTombstone.retry_count + 1,
                    VectorTombstone.last_error: str(exc)[:MAX_ERROR_LENGTH],
                    VectorTombstone.last_attempt_at: _utcnow(),
                },
                synchronize_session=False,
            )
            db.commit()
            continue
        db.query(VectorTombstone).filter(VectorTombstone.id == row.id).delete(synchronize_session=False)
        db.commit()
        cleared += 1
    return {
        "attempted": attempted,
        "cleared": cleared,
        "failed": failed,
        "stopped_early": failed >= max_failures and attempted < len(rows),
    }


def sweep_tombstones(
    batch_limit: Optional[int] = None,
    max_failures: Optional[int] = None,
    index: Optional[VectorIndex] = None,
) -> dict:
    """Retry one batch of tombstoned ids, oldest first."""
    if DB.SessionLocal is None:
        return {"status": "skipped", "reason": "db_not_initialized"}
    batch_limit = config.TOMBSTONE_SWEEP_BATCH_LIMIT if batch_limit is None else batch_limit
    max_failures = config.TOMBSTONE_SWEEP_MAX_FAILURES if max_failures is None else max_failures
    if batch_limit <= 0:
        return {"status": "skipped", "reason": "batch_limit_disabled"}

    index = index or get_vector_index()
    db = DB.SessionLocal()
    try:
        outcome = _sweep(db, index, batch_limit, max(1, max_failures))
        remaining = tombstone_backlog(db)
    finally:
        db.close()

    if outcome["attempted"]:
        logger.info(
            "tombstone_sweep_complete",
            extra={
                "attempted": outcome["attempted"],
                "cleared": outcome["cleared"],
                "failed": outcome["failed"],
                "remaining": remaining,
            },
        )
    return {"status": "ok", **outcome, "remaining": remaining}


__all__ = [
    "mirror_deletes",
    "record_tombstone",
    "sweep_tombstones",
    "tombstone_backlog",
]
