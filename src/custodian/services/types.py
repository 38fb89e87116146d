"""Domain records exchanged between the engine services and the store.

These are plain dataclasses rather than ORM rows so the services work the
same against the in-memory and the PostgreSQL backends. Stores hand out
copies; changes only take effect once written back through the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from custodian.db.models.base import (
    CleanupTaskStatus,
    DataClassification,
    RecordSensitivity,
    SecurityLevel,
)


@dataclass
class SessionMetadata:
    """Expiration state of one analysis session.

    Attributes:
        session_id: Opaque unique identifier.
        owner_id: User who created the session; only they may extend it.
        created_at: Admission time.
        expires_at: Nominal expiry.
        last_accessed_at: Last create, extend or touch.
        security_level: Policy tier bounding lifetime and extensions.
        data_classification: Sensitivity tier imposing its own ceiling.
        max_extensions: Extensions allowed by the security level.
        extension_count: Extensions granted so far.
        grace_period_ends_at: End of the grace window, None outside grace.
    """

    session_id: str
    owner_id: str
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    security_level: SecurityLevel
    data_classification: DataClassification
    max_extensions: int
    extension_count: int = 0
    grace_period_ends_at: datetime | None = None

    @property
    def effective_expiry(self) -> datetime:
        """Grace end while grace is active, otherwise the nominal expiry."""
        return self.grace_period_ends_at or self.expires_at


@dataclass
class QuotaUsage:
    """Admissions used by a user in one period."""

    user_id: str
    period_key: str
    used_count: int
    limit: int


@dataclass(frozen=True)
class RetentionPolicy:
    """Named rule set mapping a data type to a retention duration.

    Attributes:
        policy_id: Unique policy identifier.
        name: Human-readable name.
        data_type: Data type the policy governs.
        retention_period: How long records are kept after registration.
        auto_cleanup: Whether scheduled cleanups purge this policy's records.
        secure_delete: Overwrite records before deletion.
        archive_before_delete: Write an archive entry before deletion.
        notification_threshold: Lead time for "expiring soon" queries.
        description: Optional free text.
    """

    policy_id: str
    name: str
    data_type: str
    retention_period: timedelta
    auto_cleanup: bool = True
    secure_delete: bool = True
    archive_before_delete: bool = False
    notification_threshold: timedelta = timedelta(days=1)
    description: str | None = None


@dataclass
class RetentionRecord:
    """A governed artifact tracked for retention.

    expires_at is always registered_at plus the policy's retention period.
    """

    data_id: str
    data_type: str
    content_hash: str
    policy_id: str
    registered_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    security_level: RecordSensitivity = RecordSensitivity.MEDIUM
    metadata: dict[str, Any] = field(default_factory=dict)
    is_archived: bool = False
    archive_ref: str | None = None


@dataclass
class ChildRecord:
    """A record owned by a retention record, such as a risk assessment."""

    child_id: str
    parent_id: str
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class CleanupTask:
    """A retention cleanup run, from scheduling to its final counts.

    Attributes:
        task_id: Unique identifier; at most one execution per id at a time.
        policy_id: Policy the run is scoped to, None for all auto-cleanup policies.
        status: Current state.
        scheduled_at: When the task was created.
        started_at: When execution began.
        completed_at: When execution ended, in any terminal state.
        records_found: Candidates discovered.
        records_deleted: Records removed.
        records_archived: Archive entries written.
        children_deleted: Child records removed before their parents.
        bytes_reclaimed: Estimated size of everything removed.
        errors: One entry per failed record or batch.
        warnings: Partial-run and configuration notices.
        duration_ms: Wall time of the execution.
        target_ids: data_ids of the discovered candidates, used for verification.
        verification_hash: Digest binding the task id, policy and counts.
    """

    task_id: str
    policy_id: str | None
    scheduled_at: datetime
    status: CleanupTaskStatus = CleanupTaskStatus.SCHEDULED
    started_at: datetime | None = None
    completed_at: datetime | None = None
    records_found: int = 0
    records_deleted: int = 0
    records_archived: int = 0
    children_deleted: int = 0
    bytes_reclaimed: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    duration_ms: int | None = None
    target_ids: list[str] = field(default_factory=list)
    verification_hash: str | None = None
