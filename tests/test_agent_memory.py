import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from core.services import memory_service


def test_register_and_refresh_agent(engine_ports, dev_context):
    first = memory_service.register_agent(
        agent_id="agent-1",
        name="Scout",
        capabilities=["search", "summarize"],
        metadata={"team": "infra"},
        context=dev_context,
    )
    assert first["status"] == "registered"
    assert first["created"] is True
    assert first["registeredBy"] == "dev"

    second = memory_service.register_agent(agent_id="agent-1", capabilities=["search"], context=dev_context)
    assert second["created"] is False
    assert second["name"] == "Scout"
    assert second["capabilities"] == ["search"]


def test_learnings_and_preferences(engine_ports, dev_context):
    recorded = memory_service.record_learning(
        lesson="Prefer small migrations",
        context_text="schema work",
        confidence=0.7,
        agent_id="agent-1",
        context=dev_context,
    )
    assert recorded["status"] == "ok"
    assert recorded["learningId"]

    memory_service.set_preferences(preferences={"tone": "terse"}, agent_id="agent-1", context=dev_context)
    merged = memory_service.set_preferences(preferences={"lang": "en"}, agent_id="agent-1", context=dev_context)
    assert merged["preferences"] == {"tone": "terse", "lang": "en"}

    memory = memory_service.get_individual_memory(agent_id="agent-1", context=dev_context)
    assert memory["preferences"] == {"tone": "terse", "lang": "en"}
    assert memory["learnings"][0]["lesson"] == "Prefer small migrations"
    assert memory["learnings"][0]["context"] == "schema work"
    assert memory["profile"]["registeredBy"] == "dev"


def test_learning_validation(engine_ports, dev_context):
    assert memory_service.record_learning(lesson="", context=dev_context)["error"] == "Bad Request"
    assert memory_service.record_learning(lesson="x", confidence=1.5, context=dev_context)["error"] == "Bad Request"
    assert memory_service.set_preferences(preferences={}, context=dev_context)["field"] == "preferences"


def test_unknown_agent_has_empty_memory(engine_ports, dev_context, make_context):
    memory_service.record_learning(lesson="tenant a only", agent_id="agent-1", context=dev_context)
    other = memory_service.get_individual_memory(agent_id="agent-1", context=make_context("dev", tenant_id="tenant-b"))
    assert other["profile"] is None
    assert other["preferences"] == {}
    assert other["learnings"] == []


def test_learning_defaults_to_caller(engine_ports, current_context):
    recorded = memory_service.record_learning(lesson="contextvar identity")
    assert recorded["agentId"] == "dev"
