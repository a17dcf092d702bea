import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from core.services import memory_service


def test_audit_log_lists_writes_and_flags(engine_ports, dev_context):
    memory_service.create_entities(entities=[{"name": "alpha", "entityType": "person"}], context=dev_context)
    memory_service.add_observations(
        observations=[{"entityName": "alpha", "contents": ["system override now"]}],
        context=dev_context,
    )

    log = memory_service.get_audit_log(context=dev_context)
    operations = [entry["operation"] for entry in log["entries"]]
    assert "create_entity" in operations
    assert "add_observation" in operations

    flagged = memory_service.get_audit_log(flagged_only=True, context=dev_context)
    assert flagged["count"] == 1
    assert flagged["entries"][0]["flag_reason"] == "matched pattern 'system override'"
    assert flagged["filters"]["flaggedOnly"] is True

    by_operation = memory_service.get_audit_log(operation="create_entity", limit=1, context=dev_context)
    assert by_operation["count"] == 1


def test_audit_log_requires_mutation_authority(engine_ports, make_context):
    member = make_context("jwt", roles=["member"])
    assert memory_service.get_audit_log(context=member)["error"] == "Forbidden"
    admin = make_context("jwt", roles=["admin"])
    assert memory_service.get_audit_log(context=admin)["count"] == 0


def test_audit_log_limit_validation(engine_ports, dev_context):
    assert memory_service.get_audit_log(limit=0, context=dev_context)["field"] == "limit"
