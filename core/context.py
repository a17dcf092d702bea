"""
Request-scoped context objects for core services.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence
import contextvars

import core.config as config
from core.errors import Unauthorized

AUTH_DEV = "dev"
AUTH_API_KEY = "api_key"
AUTH_JWT = "jwt"
AUTH_TYPES = {AUTH_DEV, AUTH_API_KEY, AUTH_JWT}


@dataclass(frozen=True)
class RequestContext:
    """Verified caller identity. Built only by the identity layer, never from tool arguments."""

    tenant_id: str
    auth_type: str
    user_id: Optional[str] = None
    api_key_id: Optional[str] = None
    roles: tuple[str, ...] = ()
    scopes: tuple[str, ...] = ()
    request_id: Optional[str] = None
    source: Optional[str] = None

    def __post_init__(self):
        if self.auth_type not in AUTH_TYPES:
            raise ValueError(f"auth_type must be one of: {', '.join(sorted(AUTH_TYPES))}")

    @staticmethod
    def from_values(
        tenant_id: Optional[str],
        auth_type: str,
        user_id: Optional[str] = None,
        api_key_id: Optional[str] = None,
        roles: Optional[Sequence[str]] = None,
        scopes: Optional[Sequence[str]] = None,
        source: Optional[str] = None,
    ) -> "RequestContext":
        return RequestContext(
            tenant_id=tenant_id or config.DEFAULT_TENANT_ID,
            auth_type=auth_type,
            user_id=user_id,
            api_key_id=api_key_id,
            roles=tuple(role.strip().lower() for role in roles or () if role),
            scopes=tuple(scope.strip() for scope in scopes or () if scope),
            source=source,
        )

    @staticmethod
    def dev(tenant_id: Optional[str] = None, user_id: Optional[str] = "dev") -> "RequestContext":
        return RequestContext.from_values(tenant_id, AUTH_DEV, user_id=user_id, source="dev")

    def actor(self, agent: Optional[str] = None) -> str:
        return self.user_id or self.api_key_id or agent or "unknown"


_CURRENT_REQUEST_CONTEXT: contextvars.ContextVar[Optional["RequestContext"]] = contextvars.ContextVar(
    "neuralmemory_request_context",
    default=None,
)


def get_current_request_context() -> Optional["RequestContext"]:
    return _CURRENT_REQUEST_CONTEXT.get()


def set_current_request_context(context: Optional["RequestContext"]) -> contextvars.Token:
    return _CURRENT_REQUEST_CONTEXT.set(context)


def reset_current_request_context(token: contextvars.Token) -> None:
    _CURRENT_REQUEST_CONTEXT.reset(token)


def require_context(context: Optional["RequestContext"]) -> "RequestContext":
    if context is None:
        context = get_current_request_context()
    if context is None:
        raise Unauthorized("A verified request identity is required")
    return context


def resolve_tenant_id(context: Optional["RequestContext"]) -> str:
    tenant_id = require_context(context).tenant_id
    if not tenant_id:
        raise Unauthorized("Request identity carries no tenant")
    return tenant_id


__all__ = [
    "AUTH_DEV",
    "AUTH_API_KEY",
    "AUTH_JWT",
    "RequestContext",
    "get_current_request_context",
    "set_current_request_context",
    "reset_current_request_context",
    "require_context",
    "resolve_tenant_id",
]
