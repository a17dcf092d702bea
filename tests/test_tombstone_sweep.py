import os
from datetime import datetime, timedelta

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from core.models import TOMBSTONE_STORE, MemoryRecord, MemoryType, VectorTombstone
from core.services import memory_service
from core.services.tombstones import mirror_deletes, record_tombstone, sweep_tombstones, tombstone_backlog


def _queue(db_session, *external_ids):
    base = datetime(2026, 1, 1)
    for offset, external_id in enumerate(external_ids):
        db_session.add(
            VectorTombstone(
                external_id=external_id,
                tenant_id="tenant-a",
                failed_at=base + timedelta(minutes=offset),
            )
        )
    db_session.commit()


def test_record_tombstone_is_idempotent(db_session):
    record_tombstone(db_session, "vec-1", "tenant-a", "timeout")
    record_tombstone(db_session, "vec-1", "tenant-a", "timeout again")
    db_session.commit()
    assert tombstone_backlog(db_session) == 1
    assert db_session.query(VectorTombstone).one().last_error == "timeout"


def test_mirror_deletes_counts_and_queues(engine_ports, db_session):
    engine_ports.index.fail_ids.add("b")
    outcome = mirror_deletes(db_session, ["a", "b", "c"], "tenant-a")
    assert outcome == {"weaviateCleanup": 2, "weaviateFailures": 1}
    assert [row.external_id for row in db_session.query(VectorTombstone)] == ["b"]


def test_sweep_clears_successes_and_counts_failures(engine_ports, db_session):
    _queue(db_session, "old", "stuck", "new")
    engine_ports.index.fail_ids.add("stuck")

    outcome = sweep_tombstones()
    assert outcome["status"] == "ok"
    assert outcome["attempted"] == 3
    assert outcome["cleared"] == 2
    assert outcome["failed"] == 1
    assert outcome["remaining"] == 1

    db_session.expire_all()
    stuck = db_session.query(VectorTombstone).one()
    assert stuck.external_id == "stuck"
    assert stuck.retry_count == 1
    assert stuck.last_attempt_at is not None
    assert "stuck" in stuck.last_error


def test_sweep_processes_oldest_first_within_batch(engine_ports, db_session):
    _queue(db_session, "first", "second", "third")
    outcome = sweep_tombstones(batch_limit=2)
    assert outcome["cleared"] == 2
    assert engine_ports.index.deleted == ["first", "second"]
    assert outcome["remaining"] == 1


def test_sweep_stops_after_failure_budget(engine_ports, db_session):
    _queue(db_session, "a", "b", "c", "d")
    engine_ports.index.down = True
    outcome = sweep_tombstones(max_failures=2)
    assert outcome["attempted"] == 2
    assert outcome["failed"] == 2
    assert outcome["stopped_early"] is True
    assert outcome["remaining"] == 4


def test_sweep_without_database_is_skipped(monkeypatch):
    from core.db import DB

    monkeypatch.setattr(DB, "SessionLocal", None)
    assert sweep_tombstones()["status"] == "skipped"


def test_sweep_restores_updated_observation(engine_ports, dev_context, db_session):
    memory_service.create_entities(entities=[{"name": "ProjectX", "entityType": "project"}], context=dev_context)
    memory_service.add_observations(
        observations=[{"entityName": "ProjectX", "contents": ["kickoff held"]}],
        context=dev_context,
    )
    observation = db_session.query(MemoryRecord).filter(MemoryRecord.memory_type == MemoryType.observation).one()
    engine_ports.index.down = True

    result = memory_service.update_observation(
        observation_id=observation.id,
        new_content="kickoff rescheduled",
        context=dev_context,
    )
    assert result["weaviateReindexed"] is False
    assert db_session.query(VectorTombstone).one().operation == TOMBSTONE_STORE

    engine_ports.index.down = False
    outcome = sweep_tombstones()
    assert outcome["cleared"] == 1
    assert outcome["remaining"] == 0
    assert "kickoff rescheduled" in engine_ports.index.stored[observation.id]["text"]
    assert observation.id not in engine_ports.index.deleted


def test_sweep_deletes_store_tombstone_for_removed_row(engine_ports, db_session):
    record_tombstone(db_session, "gone", "tenant-a", "timeout", operation=TOMBSTONE_STORE)
    db_session.commit()

    outcome = sweep_tombstones()
    assert outcome["cleared"] == 1
    assert engine_ports.index.deleted == ["gone"]
    assert "gone" not in engine_ports.index.stored
