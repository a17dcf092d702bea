import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest

import core.config as config
from core.errors import Forbidden, Unauthorized
from core.services.authorization import (
    ALL_READ_PERMISSIONS,
    GRAPH_OBSERVATIONS_VIEW,
    GRAPH_SENSITIVE_VIEW,
    GRAPH_VIEW,
    MEMBER_READ_PERMISSIONS,
    VIEWER_READ_PERMISSIONS,
    authorize_mutation,
    authorize_read,
    require_mutation,
    require_read,
    require_write,
)


def test_no_identity_is_unauthorized():
    assert authorize_read(None).authorized is False
    assert authorize_mutation("delete_entity", None).authorized is False
    with pytest.raises(Unauthorized):
        require_read(None)
    with pytest.raises(Unauthorized):
        require_mutation("delete_entity", None)
    with pytest.raises(Unauthorized):
        require_write("create_entity", None)


def test_dev_context_has_everything(make_context):
    context = make_context("dev")
    assert authorize_read(context).permissions == ALL_READ_PERMISSIONS
    assert authorize_mutation("delete_entity", context).authorized


@pytest.mark.parametrize(
    "roles,expected",
    [
        (["owner"], ALL_READ_PERMISSIONS),
        (["admin"], ALL_READ_PERMISSIONS),
        (["member"], MEMBER_READ_PERMISSIONS),
        (["viewer"], VIEWER_READ_PERMISSIONS),
        (["viewer", "admin"], ALL_READ_PERMISSIONS),
    ],
)
def test_jwt_roles_map_to_permissions(make_context, roles, expected):
    result = authorize_read(make_context("jwt", roles=roles))
    assert result.authorized
    assert result.permissions == expected


def test_jwt_without_known_role_is_refused(make_context):
    result = authorize_read(make_context("jwt", roles=["guest"]))
    assert result.authorized is False
    with pytest.raises(Forbidden):
        require_read(make_context("jwt", roles=[]))


@pytest.mark.parametrize(
    "scopes,expected",
    [
        (["*"], ALL_READ_PERMISSIONS),
        (["graph:write"], ALL_READ_PERMISSIONS),
        (["graph:read"], MEMBER_READ_PERMISSIONS),
        (["graph:view"], VIEWER_READ_PERMISSIONS),
    ],
)
def test_api_key_scopes_map_to_permissions(make_context, scopes, expected):
    assert authorize_read(make_context("api_key", scopes=scopes)).permissions == expected


def test_unscoped_api_key_denied_unless_legacy(make_context, monkeypatch):
    context = make_context("api_key", scopes=[])
    monkeypatch.setattr(config, "ALLOW_LEGACY_GRAPH_MUTATIONS", False)
    assert authorize_read(context).authorized is False
    assert authorize_mutation("delete_entity", context).authorized is False

    monkeypatch.setattr(config, "ALLOW_LEGACY_GRAPH_MUTATIONS", True)
    assert authorize_read(context).permissions == ALL_READ_PERMISSIONS
    assert authorize_mutation("delete_entity", context).authorized


def test_mutation_requires_admin_or_write_scope(make_context):
    assert authorize_mutation("x", make_context("jwt", roles=["admin"])).authorized
    assert authorize_mutation("x", make_context("jwt", roles=["owner"])).authorized
    assert not authorize_mutation("x", make_context("jwt", roles=["member"])).authorized
    assert authorize_mutation("x", make_context("api_key", scopes=["graph:write"])).authorized
    assert not authorize_mutation("x", make_context("api_key", scopes=["graph:read"])).authorized

    with pytest.raises(Forbidden):
        require_mutation("delete_entity", make_context("jwt", roles=["member"]))


def test_require_read_checks_specific_permission(make_context):
    viewer = make_context("jwt", roles=["viewer"])
    assert require_read(viewer, GRAPH_VIEW).has(GRAPH_VIEW)
    with pytest.raises(Forbidden):
        require_read(viewer, GRAPH_OBSERVATIONS_VIEW)

    member = make_context("jwt", roles=["member"])
    assert require_read(member, GRAPH_OBSERVATIONS_VIEW)
    with pytest.raises(Forbidden):
        require_read(member, GRAPH_SENSITIVE_VIEW)


def test_additive_writes_need_member_access(make_context):
    assert require_write("create_entity", make_context("jwt", roles=["member"])).authorized
    assert require_write("create_entity", make_context("api_key", scopes=["graph:read"])).authorized
    with pytest.raises(Forbidden):
        require_write("create_entity", make_context("jwt", roles=["viewer"]))
