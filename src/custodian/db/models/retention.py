"""Retention models: policies, governed records, child records and cleanup tasks."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from custodian.db.models.base import (
    Base,
    CleanupTaskStatus,
    OptionalTimestampTZ,
    RecordSensitivity,
    TimestampTZ,
    UUIDPrimaryKey,
)


class RetentionPolicyEntry(Base):
    """Named rule set mapping a data type to a retention period."""

    __tablename__ = "retention_policies"

    policy_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    data_type: Mapped[str] = mapped_column(String(100), nullable=False)

    retention_seconds: Mapped[int] = mapped_column(BigInteger, nullable=False)
    notification_threshold_seconds: Mapped[int] = mapped_column(BigInteger, nullable=False)

    auto_cleanup: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    secure_delete: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    archive_before_delete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[TimestampTZ]

    __table_args__ = (
        CheckConstraint("retention_seconds > 0", name="retention_positive"),
        Index("ix_retention_policies_data_type", "data_type"),
    )


class RetentionEntry(Base):
    """A governed artifact registered for retention tracking.

    The engine never inspects the artifact itself, only its content hash.
    """

    __tablename__ = "retention_records"

    data_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    data_type: Mapped[str] = mapped_column(String(100), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    policy_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("retention_policies.policy_id", ondelete="RESTRICT"),
        nullable=False,
    )

    registered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_accessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    security_level: Mapped[RecordSensitivity] = mapped_column(
        Enum(RecordSensitivity, name="record_sensitivity", create_constraint=True),
        nullable=False,
    )

    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    archive_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    record_metadata: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        # Range scans for expired / expiring-soon queries
        Index("ix_retention_records_expires_at", "expires_at"),
        Index("ix_retention_records_policy_expires", "policy_id", "expires_at"),
        Index("ix_retention_records_data_type", "data_type"),
    )


class RiskAssessment(Base):
    """Per-session risk assessment owned by a retention record.

    Deleted before the parent record during cleanup.
    """

    __tablename__ = "risk_assessments"

    assessment_id: Mapped[UUIDPrimaryKey]
    parent_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(100), nullable=False, default="risk_assessment")
    payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[TimestampTZ]

    __table_args__ = (Index("ix_risk_assessments_parent_id", "parent_id"),)


class CleanupTaskEntry(Base):
    """One retention cleanup run and its final report."""

    __tablename__ = "cleanup_tasks"

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # NULL means the run covered every auto-cleanup policy
    policy_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[CleanupTaskStatus] = mapped_column(
        Enum(CleanupTaskStatus, name="cleanup_task_status", create_constraint=True),
        nullable=False,
        default=CleanupTaskStatus.SCHEDULED,
    )

    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]

    records_found: Mapped[int] = mapped_column(default=0, nullable=False)
    records_deleted: Mapped[int] = mapped_column(default=0, nullable=False)
    records_archived: Mapped[int] = mapped_column(default=0, nullable=False)
    children_deleted: Mapped[int] = mapped_column(default=0, nullable=False)
    bytes_reclaimed: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    errors: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    warnings: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    target_ids: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    verification_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_cleanup_tasks_status", "status"),
        Index("ix_cleanup_tasks_scheduled_at", "scheduled_at"),
        # At most one running task across every process sharing the database
        Index(
            "ux_cleanup_tasks_single_running",
            "status",
            unique=True,
            postgresql_where=text("status = 'RUNNING'"),
        ),
    )
