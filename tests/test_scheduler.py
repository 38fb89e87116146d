"""Tests for the periodic maintenance scheduler.

Tests cover:
- Due checks against the job interval
- Default jobs built from settings
- Session sweep and retention cleanup actions
- Failure isolation between jobs
- Ops audit records for completed jobs
- Loop shutdown
"""

from __future__ import annotations

import asyncio
import hashlib
from datetime import timedelta

import pytest

from custodian.db.models.base import (
    AuditStream,
    CleanupTaskStatus,
    DataClassification,
    SecurityLevel,
)
from custodian.services.audit_log import AuditEventType
from custodian.services.types import CleanupTask
from custodian.worker.scheduler import (
    RETENTION_CLEANUP,
    SESSION_SWEEP,
    ScheduledJob,
    Scheduler,
    cleanup_retention,
    run_scheduler_loop,
)


def _job(name: str, calls: list[str], interval: timedelta = timedelta(minutes=10)) -> ScheduledJob:
    async def action(engine):
        calls.append(name)
        return {"ok": True}

    return ScheduledJob(name=name, interval=interval, action=action)


class TestTick:
    """Tests for Scheduler.tick."""

    @pytest.mark.asyncio
    async def test_runs_new_jobs_immediately(self, engine, clock):
        calls: list[str] = []
        scheduler = Scheduler(engine, clock=clock)
        scheduler.add_schedule(_job("a", calls))

        assert await scheduler.tick() == ["a"]
        assert scheduler.schedules[0].last_run == clock.now

    @pytest.mark.asyncio
    async def test_waits_for_interval(self, engine, clock):
        calls: list[str] = []
        scheduler = Scheduler(engine, clock=clock)
        scheduler.add_schedule(_job("a", calls))

        await scheduler.tick()
        clock.advance(minutes=9)
        assert await scheduler.tick() == []

        clock.advance(minutes=1)
        assert await scheduler.tick() == ["a"]
        assert calls == ["a", "a"]

    @pytest.mark.asyncio
    async def test_disabled_job_never_runs(self, engine, clock):
        calls: list[str] = []
        scheduler = Scheduler(engine, clock=clock)
        job = _job("a", calls)
        job.enabled = False
        scheduler.add_schedule(job)

        assert await scheduler.tick() == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_failing_job_does_not_block_others(self, engine, clock):
        calls: list[str] = []

        async def broken(engine):
            raise RuntimeError("boom")

        scheduler = Scheduler(engine, clock=clock)
        scheduler.add_schedule(
            ScheduledJob(name="broken", interval=timedelta(minutes=1), action=broken)
        )
        scheduler.add_schedule(_job("b", calls))

        assert await scheduler.tick() == ["b"]
        assert calls == ["b"]

    @pytest.mark.asyncio
    async def test_completed_jobs_are_audited(self, engine, clock):
        scheduler = Scheduler(engine, clock=clock)
        scheduler.add_schedule(_job("a", []))

        await scheduler.tick()

        (record,) = await engine.audit.get_records(
            AuditStream.OPS, event_type=AuditEventType.MAINTENANCE_COMPLETED
        )
        assert record.actor_id == "scheduler"
        assert record.resource_id == "a"
        assert record.summary == {"ok": True}


class TestDefaultJobs:
    """Tests for the built-in maintenance jobs."""

    @pytest.mark.asyncio
    async def test_default_schedules_follow_settings(self, engine, clock):
        scheduler = Scheduler(engine, clock=clock)
        scheduler.add_default_schedules()

        by_name = {job.name: job for job in scheduler.schedules}
        assert by_name[SESSION_SWEEP].interval == timedelta(minutes=60)
        assert by_name[RETENTION_CLEANUP].interval == timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_default_jobs_do_their_work(self, engine, clock):
        await engine.sessions.create(
            "s1", "user-1", SecurityLevel.STANDARD, DataClassification.PUBLIC, 1
        )
        await engine.catalog.register(
            "rec-1", "session_data", hashlib.sha256(b"rec-1").hexdigest(), "session-data"
        )
        clock.advance(days=31)
        scheduler = Scheduler(engine, clock=clock)
        scheduler.add_default_schedules()

        assert await scheduler.tick() == [SESSION_SWEEP, RETENTION_CLEANUP]

        assert await engine.sessions.get("s1") is None
        assert await engine.catalog.get_record("rec-1") is None
        records = await engine.audit.get_records(AuditStream.OPS)
        assert records[0].summary == {"sessions_expired": 1}
        assert records[1].summary["records_deleted"] == 1

    @pytest.mark.asyncio
    async def test_cleanup_skipped_while_running(self, engine):
        engine.cleanup._running["other"] = object()
        try:
            assert await cleanup_retention(engine) == {"skipped": True}
        finally:
            engine.cleanup._running.clear()

    @pytest.mark.asyncio
    async def test_cleanup_skipped_while_another_process_runs(self, engine, clock):
        """A running task persisted by another worker blocks this pass."""
        await engine.store.put_task(
            CleanupTask(
                task_id="other-worker",
                policy_id=None,
                scheduled_at=clock.now,
                status=CleanupTaskStatus.RUNNING,
                started_at=clock.now,
            )
        )

        assert await cleanup_retention(engine) == {"skipped": True}
        assert [t.task_id for t in await engine.cleanup.history()] == ["other-worker"]


class TestSchedulerLoop:
    """Tests for run_scheduler_loop."""

    @pytest.mark.asyncio
    async def test_loop_stops_on_shutdown(self, engine):
        calls: list[str] = []
        shutdown = asyncio.Event()

        async def stop_after_first(engine):
            calls.append("ran")
            shutdown.set()
            return {}

        job = ScheduledJob(name="once", interval=timedelta(hours=1), action=stop_after_first)
        await asyncio.wait_for(
            run_scheduler_loop(engine, [job], check_interval=10, shutdown_event=shutdown),
            timeout=1,
        )

        assert calls == ["ran"]
