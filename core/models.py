"""
Neural memory database models.
SQLite (default) or PostgreSQL schema.
"""

from datetime import datetime
from enum import Enum as PyEnum
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean,
    DateTime, ForeignKey, Index, UniqueConstraint, Enum, JSON, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

import core.config as config

DEFAULT_TENANT_ID = config.DEFAULT_TENANT_ID

JSON_TYPE = JSONB if config.DB_BACKEND == "postgres" else JSON


def _uuid_default() -> str:
    return str(uuid.uuid4())

Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class MemoryType(str, PyEnum):
    entity = "entity"
    observation = "observation"
    relation = "relation"


# =============================================================================
# Tenancy
# =============================================================================

class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


class User(Base):
    __tablename__ = "users"

    id = Column(String(100), primary_key=True)
    email = Column(String(255))
    display_name = Column(String(255))
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


class TenantMembership(Base):
    __tablename__ = "tenant_memberships"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), ForeignKey("tenants.id"), nullable=False)
    user_id = Column(String(100), ForeignKey("users.id"), nullable=False)
    role = Column(String(50), nullable=False)  # owner|admin|member|viewer
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_tenant_memberships_tenant_user"),
    )


class ApiKey(Base):
    __tablename__ = "api_keys"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    user_id = Column(String(100))
    name = Column(String(255))
    key_hash = Column(String(64), nullable=False, unique=True)
    scopes = Column(JSON_TYPE, default=list, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    revoked_at = Column(DateTime(timezone=True))


# =============================================================================
# Knowledge Graph (tagged records: entity | observation | relation)
# =============================================================================

class MemoryRecord(Base):
    __tablename__ = "shared_memory"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    memory_type = Column(Enum(MemoryType, name="memory_type", native_enum=False, length=20), nullable=False)

    # entity: own name; observation: owning entity name; relation: source name
    name = Column(String(255), nullable=False)
    # relation: target name
    target_name = Column(String(255))
    # entity: entityType; relation: relationType
    kind = Column(String(100))

    contents = Column(JSON_TYPE, default=list, nullable=False)
    message_type = Column(String(50))
    sensitive = Column(Boolean, default=False, nullable=False)
    properties = Column(JSON_TYPE, default=dict)

    created_by = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_shared_memory_tenant_type", "tenant_id", "memory_type"),
        Index("ix_shared_memory_tenant_type_order", "tenant_id", "memory_type", "created_at", "id"),
        Index("ix_shared_memory_tenant_type_name", "tenant_id", "memory_type", "name"),
    )


# =============================================================================
# Agents
# =============================================================================

class AgentProfile(Base):
    __tablename__ = "agent_profiles"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    agent_id = Column(String(255), nullable=False)
    name = Column(String(255))
    capabilities = Column(JSON_TYPE, default=list)
    endpoint = Column(String(1000))
    metadata_ = Column("metadata", JSON_TYPE, default=dict)
    preferences = Column(JSON_TYPE, default=dict)
    registered_by = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "agent_id", name="uq_agent_profiles_tenant_agent"),
    )


class AgentLearning(Base):
    __tablename__ = "agent_learnings"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    agent_id = Column(String(255), nullable=False)
    context = Column(Text)
    lesson = Column(Text, nullable=False)
    confidence = Column(Float, default=0.8, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_agent_learnings_tenant_agent_created", "tenant_id", "agent_id", "created_at"),
    )


class AgentMessage(Base):
    __tablename__ = "ai_messages"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    from_agent = Column(String(255), nullable=False)
    to_agent = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(String(50), default="direct", nullable=False)
    priority = Column(String(20), default="normal", nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    read_at = Column(DateTime(timezone=True))
    archived_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_ai_messages_tenant_to_created", "tenant_id", "to_agent", "created_at"),
    )


class SessionHandoff(Base):
    __tablename__ = "session_handoffs"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    project_id = Column(String(255), nullable=False)
    from_agent = Column(String(255), nullable=False)
    summary = Column(Text, nullable=False)
    open_items = Column(JSON_TYPE, default=list, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    consumed_at = Column(DateTime(timezone=True))
    consumed_by = Column(String(255))
    active = Column(Integer, default=1, nullable=False)

    __table_args__ = (
        Index(
            "ux_session_handoffs_active_project",
            "tenant_id",
            "project_id",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active = 1"),
        ),
    )


# =============================================================================
# Audit & Tombstones
# =============================================================================

class AuditLogEntry(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    operation = Column(String(100), nullable=False)
    actor_id = Column(String(255))
    content_hash = Column(String(64))
    flagged = Column(Integer, default=0, nullable=False)
    flag_reason = Column(Text)
    target = Column(String(500))
    target_count = Column(Integer)
    reason = Column(Text)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_log_tenant_created", "tenant_id", "created_at"),
        Index("ix_audit_log_operation", "operation"),
        Index("ix_audit_log_actor", "actor_id"),
    )


TOMBSTONE_DELETE = "delete"
TOMBSTONE_STORE = "store"


class VectorTombstone(Base):
    __tablename__ = "vector_tombstones"

    id = Column(Integer, primary_key=True)
    external_id = Column(String(255), nullable=False, unique=True)
    operation = Column(String(16), nullable=False, default=TOMBSTONE_DELETE, server_default=TOMBSTONE_DELETE)
    tenant_id = Column(String(100), nullable=False, default=DEFAULT_TENANT_ID, server_default=DEFAULT_TENANT_ID)
    failed_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)
    last_attempt_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_vector_tombstones_failed_at", "failed_at", "id"),
    )


TENANT_SCOPED_MODELS = (
    ApiKey,
    MemoryRecord,
    AgentProfile,
    AgentLearning,
    AgentMessage,
    SessionHandoff,
    AuditLogEntry,
    VectorTombstone,
)
