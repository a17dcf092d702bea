"""
Request identity resolution.

Turns verified request headers into a ``RequestContext``. Tool arguments never
feed into identity; tenant and user always come from here.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime
from typing import Mapping, Optional, Sequence

import core.config as config
from core.context import AUTH_API_KEY, AUTH_JWT, RequestContext
from core.models import ApiKey, Tenant, TenantMembership, User

API_KEY_HEADER = "x-api-key"
VERIFIED_USER_HEADER = "x-verified-user"
VERIFIED_TENANT_HEADER = "x-verified-tenant"


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def _extract_api_key(headers: Mapping[str, str]) -> Optional[str]:
    raw = headers.get(API_KEY_HEADER)
    if raw:
        return raw.strip()
    authorization = headers.get("authorization") or ""
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        # Three dot-separated segments is a JWT, which only the upstream verifier handles.
        if token and token.count(".") != 2:
            return token
    return None


def create_api_key(
    db,
    *,
    tenant_id: str,
    scopes: Sequence[str],
    name: Optional[str] = None,
    user_id: Optional[str] = None,
) -> tuple[ApiKey, str]:
    """Issue an API key; the raw key is returned once and only its hash is stored."""
    raw_key = secrets.token_urlsafe(32)
    api_key = ApiKey(
        tenant_id=tenant_id,
        user_id=user_id,
        name=name,
        key_hash=hash_api_key(raw_key),
        scopes=list(scopes),
    )
    db.add(api_key)
    db.flush()
    return api_key, raw_key


def revoke_api_key(db, api_key_id: str) -> bool:
    api_key = db.query(ApiKey).filter(ApiKey.id == api_key_id).first()
    if api_key is None or api_key.revoked_at is not None:
        return False
    api_key.revoked_at = datetime.utcnow()
    return True


def ensure_membership(db, *, tenant_id: str, user_id: str, role: str) -> TenantMembership:
    if db.get(Tenant, tenant_id) is None:
        db.add(Tenant(id=tenant_id, name=tenant_id))
    if db.get(User, user_id) is None:
        db.add(User(id=user_id))
    db.flush()
    membership = (
        db.query(TenantMembership)
        .filter(TenantMembership.tenant_id == tenant_id, TenantMembership.user_id == user_id)
        .first()
    )
    if membership is None:
        membership = TenantMembership(tenant_id=tenant_id, user_id=user_id, role=role)
        db.add(membership)
    else:
        membership.role = role
    db.flush()
    return membership


def context_from_api_key(db, raw_key: str, source: Optional[str] = None) -> Optional[RequestContext]:
    api_key = (
        db.query(ApiKey)
        .filter(ApiKey.key_hash == hash_api_key(raw_key), ApiKey.revoked_at.is_(None))
        .first()
    )
    if api_key is None:
        return None
    return RequestContext.from_values(
        api_key.tenant_id,
        AUTH_API_KEY,
        user_id=api_key.user_id,
        api_key_id=api_key.id,
        scopes=api_key.scopes or [],
        source=source,
    )


def context_from_verified_user(
    db,
    user_id: str,
    tenant_id: str,
    source: Optional[str] = None,
) -> Optional[RequestContext]:
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        return None
    membership = (
        db.query(TenantMembership)
        .filter(TenantMembership.tenant_id == tenant_id, TenantMembership.user_id == user_id)
        .first()
    )
    roles = [membership.role] if membership else []
    return RequestContext.from_values(tenant_id, AUTH_JWT, user_id=user_id, roles=roles, source=source)


def resolve_request_context(
    db,
    headers: Mapping[str, str],
    source: Optional[str] = None,
) -> Optional[RequestContext]:
    """
    Resolve identity from lower-cased request headers.

    An API key that was presented but not recognized never falls through to
    another identity source.
    """
    raw_key = _extract_api_key(headers)
    if raw_key:
        return context_from_api_key(db, raw_key, source=source)

    if config.TRUST_PROXY_IDENTITY:
        user_id = (headers.get(VERIFIED_USER_HEADER) or "").strip()
        tenant_id = (headers.get(VERIFIED_TENANT_HEADER) or "").strip()
        if user_id and tenant_id:
            return context_from_verified_user(db, user_id, tenant_id, source=source)

    if config.DEV_AUTH_BYPASS:
        return RequestContext.dev()

    return None


__all__ = [
    "create_api_key",
    "context_from_api_key",
    "context_from_verified_user",
    "ensure_membership",
    "hash_api_key",
    "resolve_request_context",
    "revoke_api_key",
]
