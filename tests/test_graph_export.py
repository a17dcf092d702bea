import os
from datetime import datetime

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest

from core.context import RequestContext
from core.errors import Forbidden, Unauthorized, ValidationIssue
from core.services import memory_service
from core.services.graph_export import decode_cursor, encode_cursor, export_graph


@pytest.fixture
def populated(engine_ports, dev_context):
    memory_service.create_entities(
        entities=[{"name": f"node-{index:02d}", "entityType": "thing"} for index in range(7)],
        context=dev_context,
    )
    memory_service.create_relations(
        relations=[{"from": "node-00", "to": "node-01", "relationType": "links_to"}],
        context=dev_context,
    )
    memory_service.add_observations(
        observations=[
            {"entityName": "node-00", "contents": ["public fact"]},
            {"entityName": "node-00", "contents": ["heartbeat"], "messageType": "system"},
            {"entityName": "node-00", "contents": ["[internal] planner note"]},
        ],
        context=dev_context,
    )
    return dev_context


def test_pages_cover_every_node_once(populated):
    seen = []
    cursor = None
    pages = 0
    while True:
        result = export_graph(populated, limit=3, cursor=cursor)
        seen.extend(node["name"] for node in result.body["nodes"])
        pages += 1
        assert result.body["totals"]["nodes"] == 7
        cursor = result.body["nextCursor"]
        if cursor is None:
            break
    assert pages == 3
    assert sorted(seen) == [f"node-{index:02d}" for index in range(7)]
    assert len(seen) == len(set(seen))


def test_node_and_link_shape(populated):
    body = export_graph(populated, limit=50).body
    first = body["nodes"][0]
    assert set(first) == {"name", "entityType", "observationCount", "id", "createdAt"}
    counts = {node["name"]: node["observationCount"] for node in body["nodes"]}
    assert counts["node-00"] == 3
    assert body["links"] == [{"source": "node-00", "target": "node-01", "relationType": "links_to"}]
    assert body["totals"]["links"] == 1
    assert body["generatedAt"].endswith("Z")
    assert "observations" not in body


def test_limit_is_clamped(populated):
    body = export_graph(populated, limit=0).body
    assert len(body["nodes"]) == 1


def test_observations_follow_permissions(populated, make_context):
    member = make_context("jwt", roles=["member"])
    admin = make_context("jwt", roles=["admin"])

    member_body = export_graph(member, limit=50, include_observations=True).body
    admin_body = export_graph(admin, limit=50, include_observations=True).body

    assert [obs["contents"] for obs in member_body["observations"]] == [["public fact"]]
    assert member_body["totals"]["observations"] == 1
    assert len(admin_body["observations"]) == 3
    assert admin_body["totals"]["observations"] == 3


def test_viewer_is_refused_observations(populated, make_context):
    viewer = make_context("jwt", roles=["viewer"])
    assert export_graph(viewer, limit=50).body["totals"]["nodes"] == 7
    with pytest.raises(Forbidden):
        export_graph(viewer, include_observations=True)
    with pytest.raises(Forbidden):
        export_graph(viewer, entity_name="node-00")


def test_missing_identity_is_unauthorized(populated):
    with pytest.raises(Unauthorized):
        export_graph(None)
    with pytest.raises(Forbidden):
        export_graph(RequestContext.from_values("tenant-a", "jwt", user_id="u", roles=[]))


def test_etag_depends_on_permissions(populated, make_context):
    member = make_context("jwt", roles=["member"])
    admin = make_context("jwt", roles=["admin"])

    member_etag = export_graph(member, limit=50).etag
    admin_etag = export_graph(admin, limit=50).etag
    assert member_etag != admin_etag
    assert export_graph(member, limit=50).etag == member_etag


def test_if_none_match_and_invalidation(populated):
    first = export_graph(populated, limit=50)
    repeat = export_graph(populated, limit=50, if_none_match=first.etag)
    assert repeat.not_modified is True
    assert repeat.body is None
    assert repeat.etag == first.etag

    memory_service.add_observations(
        observations=[{"entityName": "node-03", "contents": ["new fact"]}],
        context=populated,
    )
    changed = export_graph(populated, limit=50, if_none_match=first.etag)
    assert changed.not_modified is False
    assert changed.etag != first.etag
    assert changed.body["nodes"]


def test_entity_mode_paginates_visible_observations(populated, make_context):
    memory_service.add_observations(
        observations=[{"entityName": "node-00", "contents": [f"fact {index}"]} for index in range(3)],
        context=populated,
    )
    member = make_context("jwt", roles=["member"])

    first = export_graph(member, entity_name="node-00", limit=2).body
    assert set(first) >= {"observations", "totals", "nextCursor"}
    assert first["totals"]["observations"] == 4
    assert len(first["observations"]) == 2

    second = export_graph(member, entity_name="node-00", limit=2, cursor=first["nextCursor"]).body
    assert len(second["observations"]) == 2
    assert "nextCursor" not in second
    contents = [obs["contents"][0] for obs in first["observations"] + second["observations"]]
    assert sorted(contents) == ["fact 0", "fact 1", "fact 2", "public fact"]


def test_malformed_cursor_is_rejected(populated):
    with pytest.raises(ValidationIssue) as excinfo:
        export_graph(populated, cursor="not-a-cursor!!")
    assert excinfo.value.field == "cursor"


def test_cursor_helpers_are_inverse():
    stamp = datetime(2026, 1, 2, 3, 4, 5, 678901)
    token = encode_cursor(stamp, "abc")
    assert "=" not in token
    assert decode_cursor(token) == (stamp, "abc")


def test_updated_since_filters_nodes(populated):
    body = export_graph(populated, limit=50, updated_since="2999-01-01T00:00:00Z").body
    assert body["nodes"] == []
    with pytest.raises(ValidationIssue):
        export_graph(populated, updated_since="yesterday")


def test_tool_form_includes_etag(populated):
    page = memory_service.export_graph_page(limit=2, context=populated)
    assert page["etag"].startswith('"')
    assert len(page["nodes"]) == 2
    assert page["nextCursor"]

    refused = memory_service.export_graph_page(cursor="%%%", context=populated)
    assert refused["status"] == "error"
    assert refused["field"] == "cursor"


@pytest.mark.parametrize("limit", [1, 2, 3, 6, 7, 1000])
def test_pagination_is_complete_for_any_limit(populated, limit):
    seen = []
    cursor = None
    while True:
        body = export_graph(populated, limit=limit, cursor=cursor).body
        seen.extend(node["name"] for node in body["nodes"])
        cursor = body["nextCursor"]
        if cursor is None:
            break
    assert len(seen) == 7
    assert len(set(seen)) == 7


def test_other_tenant_never_sees_entity(engine_ports, make_context):
    tenant_a = make_context("dev", tenant_id="tenant-a")
    memory_service.create_entities(
        entities=[{"name": "ProjectX", "entityType": "project", "observations": ["kickoff"]}],
        context=tenant_a,
    )
    for caller in (
        make_context("dev", tenant_id="tenant-b"),
        make_context("jwt", tenant_id="tenant-b", roles=["owner"]),
        make_context("api_key", tenant_id="tenant-b", scopes=["*"]),
    ):
        body = export_graph(caller, limit=1000, include_observations=True).body
        assert body["nodes"] == []
        assert body["observations"] == []
        entity = export_graph(caller, entity_name="ProjectX").body
        assert entity["observations"] == []


def test_mixed_contents_hidden_from_member_only(engine_ports, dev_context, make_context):
    memory_service.create_entities(entities=[{"name": "ops", "entityType": "team"}], context=dev_context)
    memory_service.add_observations(
        observations=[{"entityName": "ops", "contents": ["normal text", "[SYSTEM] internal note"]}],
        context=dev_context,
    )
    member = export_graph(make_context("jwt", roles=["member"]), include_observations=True).body
    admin = export_graph(make_context("jwt", roles=["admin"]), include_observations=True).body
    assert member["observations"] == []
    assert [obs["contents"] for obs in admin["observations"]] == [["normal text", "[SYSTEM] internal note"]]


def test_observation_totals_match_visible_rows(engine_ports, dev_context, make_context):
    memory_service.create_entities(entities=[{"name": "ops", "entityType": "team"}], context=dev_context)
    memory_service.add_observations(
        observations=[
            {"entityName": "ops", "contents": ["rota posted"]},
            {"entityName": "ops", "contents": ["pager rotated"], "messageType": "direct"},
            {"entityName": "ops", "contents": ["token refreshed"], "sensitive": True},
            {"entityName": "ops", "contents": ["lease renewed"], "messageType": " Coordination "},
            {"entityName": "ops", "contents": ["  [internal] retry loop"]},
        ],
        context=dev_context,
    )
    for roles, expected in (("member", 2), ("admin", 5)):
        caller = make_context("jwt", roles=[roles])
        full = export_graph(caller, include_observations=True).body
        entity = export_graph(caller, entity_name="ops").body
        assert full["totals"]["observations"] == expected
        assert len(full["observations"]) == expected
        assert entity["totals"]["observations"] == expected
        assert len(entity["observations"]) == expected


def test_recreated_entity_exports_once(engine_ports, dev_context):
    for _ in range(2):
        memory_service.create_entities(entities=[{"name": "dup", "entityType": "thing"}], context=dev_context)
    body = export_graph(dev_context).body
    assert [node["name"] for node in body["nodes"]] == ["dup"]
