"""Initial schema for sessions, quotas, retention, cleanup and audit.

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000+00:00

Creates:
- tracked_sessions: session expiration state
- daily_quotas: per-user, per-day admission counters
- retention_policies / retention_records / risk_assessments
- cleanup_tasks: cleanup runs and their reports
- audit_log_records: hash-chained audit trail
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

security_level = postgresql.ENUM(
    "STANDARD", "ENHANCED", "MAXIMUM", name="security_level", create_type=False
)
data_classification = postgresql.ENUM(
    "PUBLIC",
    "INTERNAL",
    "CONFIDENTIAL",
    "RESTRICTED",
    name="data_classification",
    create_type=False,
)
record_sensitivity = postgresql.ENUM(
    "LOW", "MEDIUM", "HIGH", "CRITICAL", name="record_sensitivity", create_type=False
)
cleanup_task_status = postgresql.ENUM(
    "SCHEDULED",
    "RUNNING",
    "COMPLETED",
    "ABORTED",
    "TIMED_OUT",
    "FAILED",
    name="cleanup_task_status",
    create_type=False,
)
audit_stream = postgresql.ENUM(
    "SESSION", "QUOTA", "RETENTION", "OPS", name="audit_stream", create_type=False
)

ENUMS = (security_level, data_classification, record_sensitivity, cleanup_task_status, audit_stream)


def _timestamp(name: str, *, nullable: bool = False, default_now: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()") if default_now else None,
        nullable=nullable,
    )


def upgrade() -> None:
    """Apply migration: create the engine tables."""
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "tracked_sessions",
        sa.Column("session_id", sa.String(128), nullable=False),
        sa.Column("owner_id", sa.String(255), nullable=False),
        _timestamp("created_at"),
        _timestamp("expires_at"),
        _timestamp("last_accessed_at"),
        sa.Column("extension_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_extensions", sa.Integer(), nullable=False),
        _timestamp("grace_period_ends_at", nullable=True),
        sa.Column("security_level", security_level, nullable=False),
        sa.Column("data_classification", data_classification, nullable=False),
        sa.PrimaryKeyConstraint("session_id", name=op.f("pk_tracked_sessions")),
    )
    op.create_index("ix_tracked_sessions_owner_id", "tracked_sessions", ["owner_id"])
    op.create_index("ix_tracked_sessions_expires_at", "tracked_sessions", ["expires_at"])

    op.create_table(
        "daily_quotas",
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("period_key", sa.String(10), nullable=False),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("daily_limit", sa.Integer(), nullable=False),
        _timestamp("created_at", default_now=True),
        _timestamp("updated_at", default_now=True),
        sa.CheckConstraint("used_count >= 0", name=op.f("ck_daily_quotas_used_count_non_negative")),
        sa.PrimaryKeyConstraint("user_id", "period_key", name=op.f("pk_daily_quotas")),
    )

    op.create_table(
        "retention_policies",
        sa.Column("policy_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("data_type", sa.String(100), nullable=False),
        sa.Column("retention_seconds", sa.BigInteger(), nullable=False),
        sa.Column("notification_threshold_seconds", sa.BigInteger(), nullable=False),
        sa.Column("auto_cleanup", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("secure_delete", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "archive_before_delete", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("description", sa.Text(), nullable=True),
        _timestamp("created_at", default_now=True),
        sa.CheckConstraint("retention_seconds > 0", name=op.f("ck_retention_policies_retention_positive")),
        sa.PrimaryKeyConstraint("policy_id", name=op.f("pk_retention_policies")),
    )
    op.create_index("ix_retention_policies_data_type", "retention_policies", ["data_type"])

    op.create_table(
        "retention_records",
        sa.Column("data_id", sa.String(128), nullable=False),
        sa.Column("data_type", sa.String(100), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("policy_id", sa.String(100), nullable=False),
        _timestamp("registered_at"),
        _timestamp("expires_at"),
        _timestamp("last_accessed_at"),
        sa.Column("security_level", record_sensitivity, nullable=False),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("archive_ref", sa.String(255), nullable=True),
        sa.Column("record_metadata", postgresql.JSONB(), nullable=True),
        sa.ForeignKeyConstraint(
            ["policy_id"],
            ["retention_policies.policy_id"],
            name=op.f("fk_retention_records_policy_id_retention_policies"),
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("data_id", name=op.f("pk_retention_records")),
    )
    op.create_index("ix_retention_records_expires_at", "retention_records", ["expires_at"])
    op.create_index(
        "ix_retention_records_policy_expires", "retention_records", ["policy_id", "expires_at"]
    )
    op.create_index("ix_retention_records_data_type", "retention_records", ["data_type"])

    op.create_table(
        "risk_assessments",
        sa.Column(
            "assessment_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("parent_id", sa.String(128), nullable=False),
        sa.Column("kind", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=True),
        _timestamp("created_at", default_now=True),
        sa.PrimaryKeyConstraint("assessment_id", name=op.f("pk_risk_assessments")),
    )
    op.create_index("ix_risk_assessments_parent_id", "risk_assessments", ["parent_id"])

    op.create_table(
        "cleanup_tasks",
        sa.Column("task_id", sa.String(64), nullable=False),
        sa.Column("policy_id", sa.String(100), nullable=True),
        sa.Column("status", cleanup_task_status, nullable=False),
        _timestamp("scheduled_at"),
        _timestamp("started_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        sa.Column("records_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_deleted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_archived", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("children_deleted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bytes_reclaimed", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.BigInteger(), nullable=True),
        sa.Column("errors", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("warnings", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("target_ids", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("verification_hash", sa.String(64), nullable=True),
        sa.PrimaryKeyConstraint("task_id", name=op.f("pk_cleanup_tasks")),
    )
    op.create_index("ix_cleanup_tasks_status", "cleanup_tasks", ["status"])
    op.create_index("ix_cleanup_tasks_scheduled_at", "cleanup_tasks", ["scheduled_at"])
    op.create_index(
        "ux_cleanup_tasks_single_running",
        "cleanup_tasks",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'RUNNING'"),
    )

    op.create_table(
        "audit_log_records",
        sa.Column(
            "record_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        _timestamp("created_at", default_now=True),
        sa.Column("stream", audit_stream, nullable=False),
        sa.Column("seq_no", sa.BigInteger(), nullable=False),
        sa.Column("record_hash", sa.String(64), nullable=False),
        sa.Column("prev_record_hash", sa.String(64), nullable=True),
        sa.Column("payload_ref", sa.String(500), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("actor_type", sa.String(50), nullable=True),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("resource_type", sa.String(50), nullable=True),
        sa.Column("resource_id", sa.String(255), nullable=True),
        sa.Column("summary", postgresql.JSONB(), nullable=True),
        sa.PrimaryKeyConstraint("record_id", name=op.f("pk_audit_log_records")),
    )
    op.create_index(
        "ix_audit_log_records_stream_seq", "audit_log_records", ["stream", "seq_no"], unique=True
    )
    op.create_index("ix_audit_log_records_created_at", "audit_log_records", ["created_at"])
    op.create_index("ix_audit_log_records_event_type", "audit_log_records", ["event_type"])
    op.create_index(
        "ix_audit_log_records_resource", "audit_log_records", ["resource_type", "resource_id"]
    )


def downgrade() -> None:
    """Revert migration: drop the engine tables."""
    op.drop_table("audit_log_records")
    op.drop_table("cleanup_tasks")
    op.drop_table("risk_assessments")
    op.drop_table("retention_records")
    op.drop_table("retention_policies")
    op.drop_table("daily_quotas")
    op.drop_table("tracked_sessions")

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
