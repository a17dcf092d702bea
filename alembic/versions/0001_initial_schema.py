"""Initial neural memory schema.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _tenant_column() -> sa.Column:
    return sa.Column("tenant_id", sa.String(length=100), nullable=False, server_default="default")


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(length=100), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=100), primary_key=True),
        sa.Column("email", sa.String(length=255)),
        sa.Column("display_name", sa.String(length=255)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "tenant_memberships",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=100), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("user_id", sa.String(length=100), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("role", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_tenant_memberships_tenant_user"),
    )
    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _tenant_column(),
        sa.Column("user_id", sa.String(length=100)),
        sa.Column("name", sa.String(length=255)),
        sa.Column("key_hash", sa.String(length=64), nullable=False, unique=True),
        sa.Column("scopes", json_type, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "shared_memory",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _tenant_column(),
        sa.Column("memory_type", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("target_name", sa.String(length=255)),
        sa.Column("kind", sa.String(length=100)),
        sa.Column("contents", json_type, nullable=False),
        sa.Column("message_type", sa.String(length=50)),
        sa.Column("sensitive", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("properties", json_type),
        sa.Column("created_by", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_shared_memory_tenant_type", "shared_memory", ["tenant_id", "memory_type"])
    op.create_index(
        "ix_shared_memory_tenant_type_order",
        "shared_memory",
        ["tenant_id", "memory_type", "created_at", "id"],
    )
    op.create_index(
        "ix_shared_memory_tenant_type_name",
        "shared_memory",
        ["tenant_id", "memory_type", "name"],
    )

    op.create_table(
        "agent_profiles",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_column(),
        sa.Column("agent_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255)),
        sa.Column("capabilities", json_type),
        sa.Column("endpoint", sa.String(length=1000)),
        sa.Column("metadata", json_type),
        sa.Column("preferences", json_type),
        sa.Column("registered_by", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "agent_id", name="uq_agent_profiles_tenant_agent"),
    )
    op.create_table(
        "agent_learnings",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_column(),
        sa.Column("agent_id", sa.String(length=255), nullable=False),
        sa.Column("context", sa.Text()),
        sa.Column("lesson", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_agent_learnings_tenant_agent_created",
        "agent_learnings",
        ["tenant_id", "agent_id", "created_at"],
    )

    op.create_table(
        "ai_messages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _tenant_column(),
        sa.Column("from_agent", sa.String(length=255), nullable=False),
        sa.Column("to_agent", sa.String(length=255), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("message_type", sa.String(length=50), nullable=False),
        sa.Column("priority", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True)),
        sa.Column("archived_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "ix_ai_messages_tenant_to_created",
        "ai_messages",
        ["tenant_id", "to_agent", "created_at"],
    )

    op.create_table(
        "session_handoffs",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_column(),
        sa.Column("project_id", sa.String(length=255), nullable=False),
        sa.Column("from_agent", sa.String(length=255), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("open_items", json_type, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True)),
        sa.Column("consumed_by", sa.String(length=255)),
        sa.Column("active", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index(
        "ux_session_handoffs_active_project",
        "session_handoffs",
        ["tenant_id", "project_id"],
        unique=True,
        sqlite_where=sa.text("active = 1"),
        postgresql_where=sa.text("active = 1"),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        _tenant_column(),
        sa.Column("operation", sa.String(length=100), nullable=False),
        sa.Column("actor_id", sa.String(length=255)),
        sa.Column("content_hash", sa.String(length=64)),
        sa.Column("flagged", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("flag_reason", sa.Text()),
        sa.Column("target", sa.String(length=500)),
        sa.Column("target_count", sa.Integer()),
        sa.Column("reason", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_log_tenant_created", "audit_log", ["tenant_id", "created_at"])
    op.create_index("ix_audit_log_operation", "audit_log", ["operation"])
    op.create_index("ix_audit_log_actor", "audit_log", ["actor_id"])

    op.create_table(
        "vector_tombstones",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("operation", sa.String(length=16), nullable=False, server_default="delete"),
        _tenant_column(),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text()),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_vector_tombstones_failed_at", "vector_tombstones", ["failed_at", "id"])


def downgrade() -> None:
    op.drop_index("ix_vector_tombstones_failed_at", table_name="vector_tombstones")
    op.drop_table("vector_tombstones")
    op.drop_index("ix_audit_log_actor", table_name="audit_log")
    op.drop_index("ix_audit_log_operation", table_name="audit_log")
    op.drop_index("ix_audit_log_tenant_created", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ux_session_handoffs_active_project", table_name="session_handoffs")
    op.drop_table("session_handoffs")
    op.drop_index("ix_ai_messages_tenant_to_created", table_name="ai_messages")
    op.drop_table("ai_messages")
    op.drop_index("ix_agent_learnings_tenant_agent_created", table_name="agent_learnings")
    op.drop_table("agent_learnings")
    op.drop_table("agent_profiles")
    op.drop_index("ix_shared_memory_tenant_type_name", table_name="shared_memory")
    op.drop_index("ix_shared_memory_tenant_type_order", table_name="shared_memory")
    op.drop_index("ix_shared_memory_tenant_type", table_name="shared_memory")
    op.drop_table("shared_memory")
    op.drop_table("api_keys")
    op.drop_table("tenant_memberships")
    op.drop_table("users")
    op.drop_table("tenants")
