"""Pydantic schemas for the admin API endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from custodian.db.models.base import CleanupTaskStatus


class RunCleanupRequest(BaseModel):
    """Request body for starting a cleanup run."""

    policy_id: str | None = Field(
        default=None,
        description="Restrict the run to one policy; all auto-cleanup policies if omitted",
    )


class CleanupReportResponse(BaseModel):
    """Final report of a cleanup run.

    A run with per-record errors still completes; inspect ``errors``.
    """

    model_config = ConfigDict(from_attributes=True)

    task_id: str
    policy_id: str | None
    status: CleanupTaskStatus
    records_found: int
    records_deleted: int
    records_archived: int
    children_deleted: int
    bytes_reclaimed: int
    records_skipped: int
    errors: list[str]
    warnings: list[str]
    duration_ms: int
    verification_hash: str | None
    started_at: datetime | None
    completed_at: datetime | None


class CleanupTaskSummary(BaseModel):
    """Entry of the cleanup history."""

    model_config = ConfigDict(from_attributes=True)

    task_id: str
    policy_id: str | None
    status: CleanupTaskStatus
    scheduled_at: datetime
    completed_at: datetime | None
    records_found: int
    records_deleted: int
    records_archived: int


class CleanupVerificationResponse(BaseModel):
    """Result of verifying a cleanup run."""

    model_config = ConfigDict(from_attributes=True)

    task_id: str
    is_complete: bool
    remaining_count: int
    deleted_count: int
    archived_count: int
    verification_hash: str | None
    errors: list[str]
    verified_at: datetime


class AbortCleanupRequest(BaseModel):
    """Request body for aborting cleanup runs."""

    task_id: str | None = Field(
        default=None, description="Task to abort; all running tasks if omitted"
    )


class AbortCleanupResponse(BaseModel):
    """Whether any running task was asked to stop."""

    aborted: bool
    running_task_ids: list[str]


class RetentionStatsResponse(BaseModel):
    """Catalog-wide retention counts."""

    model_config = ConfigDict(from_attributes=True)

    total_records: int
    archived_records: int
    by_policy: dict[str, int]
    by_data_type: dict[str, int]
    expired_records: int
    expiring_records: int
