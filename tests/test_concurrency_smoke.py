import os
from concurrent.futures import ThreadPoolExecutor

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from core.context import RequestContext
from core.models import SessionHandoff
from core.services import memory_service

CONTEXT = RequestContext.dev(tenant_id="tenant-a")


def _close_session(agent_id: str) -> dict:
    return memory_service.end_session(
        agent_id=agent_id,
        project_id="shared-project",
        summary=f"handoff from {agent_id}",
        context=CONTEXT,
    )


def _open_session(agent_id: str) -> dict:
    return memory_service.begin_session(agent_id=agent_id, project_id="shared-project", context=CONTEXT)


def test_concurrent_end_session_leaves_one_active_handoff(engine_ports, db_session):
    agents = [f"agent-{index}" for index in range(4)]
    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(_close_session, agents))

    assert all(result["status"] == "session_closed" for result in results)
    active = db_session.query(SessionHandoff).filter(SessionHandoff.active == 1).all()
    assert len(active) == 1
    assert db_session.query(SessionHandoff).count() == 4


def test_concurrent_begin_session_delivers_handoff_once(engine_ports):
    _open_session("setup")
    _close_session("closer")

    with ThreadPoolExecutor(max_workers=3) as executor:
        results = list(executor.map(_open_session, ["reader-1", "reader-2", "reader-3"]))

    assert all(result["status"] == "session_opened" for result in results)
    delivered = [result["handoff"] for result in results if result["handoff"]]
    assert len(delivered) == 1
    assert delivered[0]["summary"] == "handoff from closer"
