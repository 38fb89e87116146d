"""Admin API router.

Operational endpoints for retention cleanup. All endpoints require the
admin role.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Query

from custodian.api.dependencies import AdminDep, EngineDep
from custodian.api.middleware.errors import ConflictError, NotFoundError
from custodian.api.schemas.admin import (
    AbortCleanupRequest,
    AbortCleanupResponse,
    CleanupReportResponse,
    CleanupTaskSummary,
    CleanupVerificationResponse,
    RetentionStatsResponse,
    RunCleanupRequest,
)
from custodian.services.cleanup import CleanupInProgressError, CleanupTaskNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/cleanup/run", response_model=CleanupReportResponse)
async def run_cleanup(
    admin: AdminDep,
    engine: EngineDep,
    body: RunCleanupRequest | None = None,
) -> CleanupReportResponse:
    """Run a retention cleanup and return its report.

    Partial failures still return 200 with the failed records listed in
    ``errors``. A run already in progress yields 409.
    """
    policy_id = body.policy_id if body else None
    logger.info("Cleanup requested via API: admin=%s, policy_id=%s", admin.user_id, policy_id)
    try:
        report = await engine.cleanup.run_cleanup(policy_id)
    except CleanupInProgressError as e:
        raise ConflictError(
            str(e),
            detail={"running_task_ids": e.running_task_ids or engine.cleanup.running_task_ids},
        ) from e

    return CleanupReportResponse.model_validate(report)


@router.get("/cleanup/history", response_model=list[CleanupTaskSummary])
async def cleanup_history(
    admin: AdminDep,
    engine: EngineDep,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> list[CleanupTaskSummary]:
    """List recent cleanup tasks, newest first."""
    tasks = await engine.cleanup.history(limit)
    return [CleanupTaskSummary.model_validate(task) for task in tasks]


@router.get("/cleanup/{task_id}/verify", response_model=CleanupVerificationResponse)
async def verify_cleanup(
    task_id: str,
    admin: AdminDep,
    engine: EngineDep,
) -> CleanupVerificationResponse:
    """Check that every record targeted by a cleanup run is gone."""
    try:
        verification = await engine.cleanup.verify_cleanup(task_id)
    except CleanupTaskNotFoundError as e:
        raise NotFoundError("Cleanup task", task_id) from e

    return CleanupVerificationResponse.model_validate(verification)


@router.post("/cleanup/abort", response_model=AbortCleanupResponse)
async def abort_cleanup(
    admin: AdminDep,
    engine: EngineDep,
    body: AbortCleanupRequest | None = None,
) -> AbortCleanupResponse:
    """Ask running cleanups to stop at their next record boundary."""
    task_id = body.task_id if body else None
    aborted = engine.cleanup.abort(task_id)
    logger.info(
        "Cleanup abort via API: admin=%s, task_id=%s, aborted=%s",
        admin.user_id,
        task_id,
        aborted,
    )
    return AbortCleanupResponse(aborted=aborted, running_task_ids=engine.cleanup.running_task_ids)


@router.get("/retention/stats", response_model=RetentionStatsResponse)
async def retention_stats(admin: AdminDep, engine: EngineDep) -> RetentionStatsResponse:
    """Return catalog-wide retention counts."""
    return RetentionStatsResponse.model_validate(await engine.catalog.stats())
