"""
Graph authorization.

Resolves a verified ``RequestContext`` into the effective read permission set,
and decides whether it may mutate the graph.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import core.config as config
from core.context import AUTH_API_KEY, AUTH_DEV, AUTH_JWT, RequestContext
from core.errors import Forbidden, Unauthorized

GRAPH_VIEW = "graph:view"
GRAPH_OBSERVATIONS_VIEW = "graph:observations:view"
GRAPH_SENSITIVE_VIEW = "graph:sensitive:view"

ALL_READ_PERMISSIONS = frozenset({GRAPH_VIEW, GRAPH_OBSERVATIONS_VIEW, GRAPH_SENSITIVE_VIEW})
MEMBER_READ_PERMISSIONS = frozenset({GRAPH_VIEW, GRAPH_OBSERVATIONS_VIEW})
VIEWER_READ_PERMISSIONS = frozenset({GRAPH_VIEW})

SCOPE_WILDCARD = "*"
SCOPE_GRAPH_WRITE = "graph:write"
SCOPE_GRAPH_READ = "graph:read"
SCOPE_GRAPH_VIEW = "graph:view"

ADMIN_ROLES = {"admin", "owner"}
JWT_ROLE_PERMISSIONS = {
    "owner": ALL_READ_PERMISSIONS,
    "admin": ALL_READ_PERMISSIONS,
    "member": MEMBER_READ_PERMISSIONS,
    "viewer": VIEWER_READ_PERMISSIONS,
}


@dataclass(frozen=True)
class ReadAuthorization:
    authorized: bool
    permissions: frozenset = frozenset()
    reason: Optional[str] = None

    def has(self, permission: str) -> bool:
        return permission in self.permissions


@dataclass(frozen=True)
class MutationAuthorization:
    authorized: bool
    reason: str


def _log_legacy_passthrough(context: RequestContext, action: str) -> None:
    config.logger.warning(
        "legacy_graph_passthrough",
        extra={
            "tenant_id": context.tenant_id,
            "api_key_id": context.api_key_id,
            "action": action,
        },
    )


def _jwt_read_permissions(roles: tuple[str, ...]) -> frozenset:
    # Highest-privilege role wins when several are present.
    best: frozenset = frozenset()
    for role in roles:
        granted = JWT_ROLE_PERMISSIONS.get(role)
        if granted is not None and len(granted) > len(best):
            best = granted
    return best


def _api_key_read_permissions(context: RequestContext) -> frozenset:
    scopes = set(context.scopes)
    if not scopes:
        if config.ALLOW_LEGACY_GRAPH_MUTATIONS:
            _log_legacy_passthrough(context, "read")
            return ALL_READ_PERMISSIONS
        return frozenset()
    if SCOPE_WILDCARD in scopes or SCOPE_GRAPH_WRITE in scopes:
        return ALL_READ_PERMISSIONS
    if SCOPE_GRAPH_READ in scopes:
        return MEMBER_READ_PERMISSIONS
    if SCOPE_GRAPH_VIEW in scopes:
        return VIEWER_READ_PERMISSIONS
    return frozenset()


def authorize_read(context: Optional[RequestContext]) -> ReadAuthorization:
    """Compute the effective read permissions for a caller."""
    if context is None:
        return ReadAuthorization(False, frozenset(), "no request identity")

    if context.auth_type == AUTH_DEV:
        permissions = ALL_READ_PERMISSIONS
    elif context.auth_type == AUTH_JWT:
        permissions = _jwt_read_permissions(context.roles)
    elif context.auth_type == AUTH_API_KEY:
        permissions = _api_key_read_permissions(context)
    else:
        permissions = frozenset()

    if not permissions:
        return ReadAuthorization(
            False,
            frozenset(),
            f"{context.auth_type} identity has no graph read permission",
        )
    return ReadAuthorization(True, permissions, None)


def authorize_mutation(action: str, context: Optional[RequestContext]) -> MutationAuthorization:
    """Only dev, write-scoped API keys, and admin/owner JWTs may mutate the graph."""
    if context is None:
        return MutationAuthorization(False, "no request identity")

    if context.auth_type == AUTH_DEV:
        return MutationAuthorization(True, "dev bypass")

    if context.auth_type == AUTH_API_KEY:
        scopes = set(context.scopes)
        if SCOPE_WILDCARD in scopes or SCOPE_GRAPH_WRITE in scopes:
            return MutationAuthorization(True, "api key has graph:write scope")
        if not scopes and config.ALLOW_LEGACY_GRAPH_MUTATIONS:
            _log_legacy_passthrough(context, action)
            return MutationAuthorization(True, "legacy unscoped api key passthrough")
        return MutationAuthorization(False, f"{action} requires graph:write scope")

    if context.auth_type == AUTH_JWT:
        if ADMIN_ROLES.intersection(context.roles):
            return MutationAuthorization(True, "jwt admin role")
        return MutationAuthorization(False, f"{action} requires admin or owner role")

    return MutationAuthorization(False, f"unsupported auth type {context.auth_type}")


def require_read(context: Optional[RequestContext], permission: str = GRAPH_VIEW) -> ReadAuthorization:
    if context is None:
        raise Unauthorized("A verified request identity is required")
    result = authorize_read(context)
    if not result.authorized:
        raise Forbidden(result.reason)
    if permission not in result.permissions:
        raise Forbidden(f"{permission} permission required")
    return result


def require_mutation(action: str, context: Optional[RequestContext]) -> MutationAuthorization:
    if context is None:
        raise Unauthorized("A verified request identity is required")
    result = authorize_mutation(action, context)
    if not result.authorized:
        raise Forbidden(result.reason)
    return result


def require_write(action: str, context: Optional[RequestContext]) -> ReadAuthorization:
    """Additive writes need member-level read access; view-only callers are refused."""
    if context is None:
        raise Unauthorized("A verified request identity is required")
    result = authorize_read(context)
    if not result.authorized:
        raise Forbidden(result.reason)
    if GRAPH_OBSERVATIONS_VIEW not in result.permissions:
        raise Forbidden(f"{action} requires member access")
    return result


__all__ = [
    "GRAPH_VIEW",
    "GRAPH_OBSERVATIONS_VIEW",
    "GRAPH_SENSITIVE_VIEW",
    "ReadAuthorization",
    "MutationAuthorization",
    "authorize_read",
    "authorize_mutation",
    "require_read",
    "require_mutation",
    "require_write",
]
