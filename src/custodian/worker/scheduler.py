"""Periodic maintenance scheduler.

This module drives the two recurring maintenance passes of the engine:
- Session sweep: expires sessions past their effective expiry
- Retention cleanup: purges expired records of auto-cleanup policies

Each pass that runs is summarized in the ops audit stream.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from custodian.core.clock import utcnow
from custodian.db.models.base import AuditStream
from custodian.services.audit_log import AuditEventType
from custodian.services.cleanup import CleanupInProgressError

if TYPE_CHECKING:
    from custodian.core.clock import Clock
    from custodian.services.engine import Engine

logger = logging.getLogger(__name__)

JobAction = Callable[["Engine"], Awaitable[dict[str, Any]]]

SESSION_SWEEP = "session_sweep"
RETENTION_CLEANUP = "retention_cleanup"


@dataclass
class ScheduledJob:
    """Definition of a periodic maintenance job.

    Attributes:
        name: Job name used in logs and audit records.
        interval: Time between runs.
        action: Coroutine function performing the job; returns a summary.
        enabled: Whether this job is active.
        last_run: When the job last started.
    """

    name: str
    interval: timedelta
    action: JobAction
    enabled: bool = True
    last_run: datetime | None = None


async def sweep_sessions(engine: Engine) -> dict[str, Any]:
    """Expire overdue sessions."""
    removed = await engine.sessions.cleanup_expired()
    return {"sessions_expired": removed}


async def cleanup_retention(engine: Engine) -> dict[str, Any]:
    """Run a retention cleanup unless one is already in progress."""
    if engine.cleanup.is_running:
        logger.info("Retention cleanup already running, skipping this pass")
        return {"skipped": True}
    try:
        report = await engine.cleanup.run_cleanup()
    except CleanupInProgressError as e:
        logger.info("Retention cleanup running elsewhere, skipping: running=%s", e.running_task_ids)
        return {"skipped": True}
    return {
        "task_id": report.task_id,
        "status": report.status.value,
        "records_deleted": report.records_deleted,
        "records_archived": report.records_archived,
        "error_count": len(report.errors),
    }


def default_schedules(engine: Engine) -> list[ScheduledJob]:
    """Build the default jobs from the engine settings."""
    settings = engine.settings
    return [
        ScheduledJob(
            name=SESSION_SWEEP,
            interval=timedelta(minutes=settings.session.cleanup_interval_minutes),
            action=sweep_sessions,
        ),
        ScheduledJob(
            name=RETENTION_CLEANUP,
            interval=timedelta(hours=settings.cleanup.retention_interval_hours),
            action=cleanup_retention,
        ),
    ]


class Scheduler:
    """Runs maintenance jobs when their interval has elapsed.

    Example:
        scheduler = Scheduler(engine)
        scheduler.add_default_schedules()
        await scheduler.tick()  # Run every job that is due
    """

    def __init__(self, engine: Engine, *, clock: Clock = utcnow) -> None:
        """Initialize the scheduler.

        Args:
            engine: Engine whose components the jobs operate on.
            clock: Time source for due checks.
        """
        self.engine = engine
        self._clock = clock
        self._schedules: list[ScheduledJob] = []

    @property
    def schedules(self) -> list[ScheduledJob]:
        return list(self._schedules)

    def add_schedule(self, schedule: ScheduledJob) -> None:
        """Add a job definition."""
        self._schedules.append(schedule)
        logger.debug("Added schedule: name=%s, interval=%s", schedule.name, schedule.interval)

    def add_default_schedules(self) -> None:
        """Add the session sweep and retention cleanup jobs."""
        for schedule in default_schedules(self.engine):
            self.add_schedule(schedule)
        logger.info("Added %d default schedules", len(self._schedules))

    async def tick(self) -> list[str]:
        """Run every enabled job that is due.

        A failing job is logged and does not prevent the others from running.

        Returns:
            Names of the jobs that ran successfully.
        """
        now = self._clock()
        completed: list[str] = []

        for schedule in self._schedules:
            if not schedule.enabled or not self._is_due(schedule, now):
                continue

            schedule.last_run = now
            try:
                summary = await schedule.action(self.engine)
            except Exception as e:
                logger.exception("Maintenance job failed: name=%s, error=%s", schedule.name, e)
                continue

            await self.engine.audit.append(
                stream=AuditStream.OPS,
                event_type=AuditEventType.MAINTENANCE_COMPLETED,
                payload={"job": schedule.name, **summary},
                actor_type="system",
                actor_id="scheduler",
                resource_type="maintenance_job",
                resource_id=schedule.name,
                summary=summary,
            )
            completed.append(schedule.name)
            logger.info(
                "Maintenance job completed: name=%s, next_due=%s",
                schedule.name,
                (now + schedule.interval).isoformat(),
            )

        return completed

    def _is_due(self, schedule: ScheduledJob, now: datetime) -> bool:
        if schedule.last_run is None:
            return True
        return now >= schedule.last_run + schedule.interval


async def run_scheduler_loop(
    engine: Engine,
    schedules: list[ScheduledJob] | None = None,
    check_interval: float = 60.0,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Run the scheduler until ``shutdown_event`` is set.

    Args:
        engine: Engine the jobs operate on.
        schedules: Job definitions (defaults built from settings if None).
        check_interval: Seconds between due checks.
        shutdown_event: Event to signal shutdown.
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    scheduler = Scheduler(engine)
    if schedules:
        for schedule in schedules:
            scheduler.add_schedule(schedule)
    else:
        scheduler.add_default_schedules()

    logger.info(
        "Scheduler starting: check_interval=%ss, schedules=%d",
        check_interval,
        len(scheduler.schedules),
    )

    while not shutdown_event.is_set():
        try:
            ran = await scheduler.tick()
            if ran:
                logger.debug("Maintenance jobs run: %s", ran)
        except Exception as e:
            logger.exception("Error in scheduler loop: %s", e)

        # Wait for next check interval (wait_for allows prompt shutdown)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=check_interval)

    logger.info("Scheduler stopped")
