"""Batched retention cleanup with single-flight runs and cooperative cancellation.

A cleanup run discovers expired records through the retention catalog,
splits them into fixed-size batches and processes the batches either
concurrently (bounded by a semaphore) or one after another. Inside a
batch each record is handled independently: its child records are
deleted, it is archived when its policy asks for it, then it is purged
through the secure-wipe path. A failing record is reported and the batch
moves on; a failing batch is reported and the other batches are
unaffected.

Only one run is active at a time across every process sharing the store:
a run is persisted as running through the store's ``start_task``, which
refuses while another task is running. Runs left running by a process
that died are failed once they are well past the timeout. Session data
records also expire the session they are keyed by.

Timeouts and aborts are cooperative: a CancellationToken is checked
between records, so the record in flight always finishes and no record
is left half-deleted. The run then ends with a partial report. Abort
reaches only the runs of the process it is called in.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from custodian.core.clock import utcnow
from custodian.db.models.base import AuditStream, CleanupTaskStatus
from custodian.services.audit_log import AuditEventType
from custodian.services.retention import SESSION_DATA_TYPE, PolicyNotFoundError
from custodian.services.session_lifecycle import ExpiryReason
from custodian.services.types import CleanupTask

if TYPE_CHECKING:
    from collections.abc import Sequence

    from custodian.core.clock import Clock
    from custodian.services.audit_log import AuditLogService
    from custodian.services.retention import RetentionCatalog
    from custodian.services.session_lifecycle import SessionLifecycleManager
    from custodian.services.store import EngineStore
    from custodian.services.types import ChildRecord, RetentionPolicy, RetentionRecord

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_CONCURRENT_BATCHES = 3
DEFAULT_TIMEOUT_SECONDS = 30 * 60

# Running tasks older than this many timeouts were abandoned by a dead process
STALE_RUN_FACTOR = 2


class CleanupError(Exception):
    """Base exception for cleanup errors."""

    pass


class CleanupInProgressError(CleanupError):
    """Raised when a run is requested while a conflicting run is active.

    ``running_task_ids`` lists the runs in the way, which may belong to
    another process sharing the store.
    """

    def __init__(
        self,
        task_id: str | None = None,
        running_task_ids: Sequence[str] = (),
    ) -> None:
        self.task_id = task_id
        self.running_task_ids = list(running_task_ids)
        if task_id:
            super().__init__(f"Cleanup task {task_id} is already running")
        else:
            super().__init__("A cleanup run is already in progress")


class CleanupTaskNotFoundError(CleanupError):
    """Raised when a task id is unknown."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Cleanup task not found: {task_id}")


class InvalidTaskStateError(CleanupError):
    """Raised when a task cannot be executed from its current state."""

    def __init__(self, task_id: str, status: CleanupTaskStatus) -> None:
        self.task_id = task_id
        self.status = status
        super().__init__(f"Cleanup task {task_id} cannot run from status {status.value}")


class CancellationReason(str, Enum):
    """Why a run stopped early."""

    ABORTED = "aborted"
    TIMED_OUT = "timed_out"


class CancellationToken:
    """One-shot cooperative cancellation flag.

    The first ``cancel`` wins; its reason is kept.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: CancellationReason | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: CancellationReason) -> bool:
        """Request cancellation, returning False if it was already requested."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class BatchOutcome:
    """Counts collected while processing one batch."""

    index: int
    processed: int = 0
    deleted: int = 0
    archived: int = 0
    children_deleted: int = 0
    bytes_reclaimed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CleanupReport:
    """Final result of a cleanup run."""

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

    @property
    def success(self) -> bool:
        return self.status == CleanupTaskStatus.COMPLETED and not self.errors


@dataclass(frozen=True)
class CleanupVerification:
    """Result of re-checking a finished run against the store."""

    task_id: str
    is_complete: bool
    remaining_count: int
    deleted_count: int
    archived_count: int
    verification_hash: str | None
    errors: list[str]
    verified_at: datetime


def estimate_record_size(record: RetentionRecord, children: Sequence[ChildRecord] = ()) -> int:
    """Approximate the stored size of a record and its children in bytes."""
    body = {
        "data_id": record.data_id,
        "data_type": record.data_type,
        "content_hash": record.content_hash,
        "policy_id": record.policy_id,
        "metadata": record.metadata,
    }
    size = len(json.dumps(body, default=str).encode("utf-8"))
    for child in children:
        size += len(json.dumps(child.payload, default=str).encode("utf-8"))
    return size


def compute_verification_hash(
    task_id: str,
    policy_id: str | None,
    records_deleted: int,
    records_archived: int,
) -> str:
    """Digest binding a task to its outcome counts."""
    material = ":".join(
        [task_id, policy_id or "all", str(records_deleted), str(records_archived), "CLEANUP_VERIFIED"]
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class CleanupScheduler:
    """Runs retention cleanups over the catalog.

    Example:
        scheduler = CleanupScheduler(store, catalog, sessions, audit, batch_size=50)
        report = await scheduler.run_cleanup()
        verification = await scheduler.verify_cleanup(report.task_id)
    """

    def __init__(
        self,
        store: EngineStore,
        catalog: RetentionCatalog,
        sessions: SessionLifecycleManager,
        audit: AuditLogService,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        parallel: bool = True,
        max_concurrent_batches: int = DEFAULT_MAX_CONCURRENT_BATCHES,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store: Store holding tasks and child records.
            catalog: Source of expired records and the archive/purge path.
            sessions: Session manager used for secure session wipes.
            audit: Audit trail for run summaries.
            batch_size: Records per batch.
            parallel: Process batches concurrently.
            max_concurrent_batches: Bound on concurrently processed batches.
            timeout_seconds: Wall-clock budget of one run.
            clock: Time source for task timestamps.
        """
        if batch_size < 1:
            msg = f"batch_size must be at least 1, got {batch_size}"
            raise ValueError(msg)
        if max_concurrent_batches < 1:
            msg = f"max_concurrent_batches must be at least 1, got {max_concurrent_batches}"
            raise ValueError(msg)

        self._store = store
        self._catalog = catalog
        self._sessions = sessions
        self._audit = audit
        self._batch_size = batch_size
        self._parallel = parallel
        self._max_concurrent_batches = max_concurrent_batches
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._running: dict[str, CancellationToken] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._running)

    @property
    def running_task_ids(self) -> list[str]:
        return list(self._running)

    async def schedule(
        self,
        policy_id: str | None = None,
        scheduled_at: datetime | None = None,
    ) -> CleanupTask:
        """Persist a task for later execution with ``execute_task``."""
        task = CleanupTask(
            task_id=uuid.uuid4().hex,
            policy_id=policy_id,
            scheduled_at=scheduled_at or self._clock(),
        )
        await self._store.put_task(task)
        logger.info("Cleanup task scheduled: task_id=%s, policy_id=%s", task.task_id, policy_id)
        return task

    async def run_cleanup(self, policy_id: str | None = None) -> CleanupReport:
        """Run a cleanup now.

        Args:
            policy_id: Restrict the run to one policy; None covers every
                policy with auto_cleanup enabled.

        Raises:
            CleanupInProgressError: If any run is active, here or in another
                process sharing the store.
        """
        if self._running:
            raise CleanupInProgressError(running_task_ids=list(self._running))

        task = CleanupTask(task_id=uuid.uuid4().hex, policy_id=policy_id, scheduled_at=self._clock())
        # Claimed before the first await so a concurrent caller sees it
        token = self._running[task.task_id] = CancellationToken()
        try:
            await self._start(task)
            return await self._execute(task, token)
        finally:
            self._running.pop(task.task_id, None)

    async def execute_task(self, task_id: str) -> CleanupReport:
        """Execute a previously scheduled task.

        Raises:
            CleanupInProgressError: If this task or another run is active.
            CleanupTaskNotFoundError: If the task id is unknown.
            InvalidTaskStateError: If the task is not in the scheduled state.
        """
        if task_id in self._running:
            raise CleanupInProgressError(task_id, running_task_ids=list(self._running))

        token = self._running[task_id] = CancellationToken()
        try:
            task = await self._store.get_task(task_id)
            if task is None:
                raise CleanupTaskNotFoundError(task_id)
            if task.status != CleanupTaskStatus.SCHEDULED:
                raise InvalidTaskStateError(task_id, task.status)
            await self._start(task)
            return await self._execute(task, token)
        finally:
            self._running.pop(task_id, None)

    def abort(self, task_id: str | None = None) -> bool:
        """Request cancellation of one running task, or of all of them.

        Returns:
            True if at least one run was asked to stop.
        """
        if task_id is not None:
            tokens = [self._running[task_id]] if task_id in self._running else []
        else:
            tokens = list(self._running.values())

        aborted = False
        for token in tokens:
            aborted = token.cancel(CancellationReason.ABORTED) or aborted
        if aborted:
            logger.warning("Cleanup abort requested: task_id=%s", task_id or "all")
        return aborted

    async def history(self, limit: int = 20) -> list[CleanupTask]:
        """Return the most recent tasks, newest first."""
        return await self._store.list_tasks(limit)

    async def get_task(self, task_id: str) -> CleanupTask | None:
        return await self._store.get_task(task_id)

    async def verify_cleanup(self, task_id: str) -> CleanupVerification:
        """Check that every record targeted by a run is gone.

        Raises:
            CleanupTaskNotFoundError: If the task id is unknown.
        """
        task = await self._store.get_task(task_id)
        if task is None:
            raise CleanupTaskNotFoundError(task_id)

        remaining = (
            await self._store.query_records(data_ids=task.target_ids) if task.target_ids else []
        )
        errors = list(task.errors)
        if task.status != CleanupTaskStatus.COMPLETED:
            errors.append(f"Task ended with status {task.status.value}")
        if remaining:
            errors.append(f"{len(remaining)} targeted records still present")

        verification = CleanupVerification(
            task_id=task_id,
            is_complete=task.status == CleanupTaskStatus.COMPLETED and not remaining,
            remaining_count=len(remaining),
            deleted_count=task.records_deleted,
            archived_count=task.records_archived,
            verification_hash=task.verification_hash,
            errors=errors,
            verified_at=self._clock(),
        )

        summary = {
            "is_complete": verification.is_complete,
            "remaining_count": verification.remaining_count,
            "deleted_count": verification.deleted_count,
        }
        await self._audit.append(
            stream=AuditStream.RETENTION,
            event_type=AuditEventType.CLEANUP_VERIFIED,
            payload={"task_id": task_id, **summary},
            actor_type="system",
            resource_type="cleanup_task",
            resource_id=task_id,
            summary=summary,
        )
        return verification

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _start(self, task: CleanupTask) -> None:
        task.status = CleanupTaskStatus.RUNNING
        task.started_at = self._clock()
        # A run never legitimately outlives its budget by this much
        stale_before = task.started_at - timedelta(
            seconds=self._timeout_seconds * STALE_RUN_FACTOR
        )
        blocking = await self._store.start_task(task, stale_before=stale_before)
        if blocking:
            logger.info(
                "Cleanup not started, runs in progress elsewhere: task_id=%s, running=%s",
                task.task_id,
                blocking,
            )
            raise CleanupInProgressError(running_task_ids=blocking)
        logger.info("Cleanup started: task_id=%s, policy_id=%s", task.task_id, task.policy_id)

    async def _execute(self, task: CleanupTask, token: CancellationToken) -> CleanupReport:
        started = time.monotonic()

        watchdog = asyncio.create_task(self._watchdog(token))
        skipped = 0
        try:
            try:
                records, policies = await self._discover(task.policy_id)
            except Exception as e:
                logger.exception("Cleanup discovery failed: task_id=%s", task.task_id)
                task.status = CleanupTaskStatus.FAILED
                task.errors.append(f"discovery: {e}")
            else:
                task.records_found = len(records)
                task.target_ids = [r.data_id for r in records]
                batches = [
                    records[i : i + self._batch_size]
                    for i in range(0, len(records), self._batch_size)
                ]
                for outcome in await self._run_batches(batches, policies, token):
                    task.records_deleted += outcome.deleted
                    task.records_archived += outcome.archived
                    task.children_deleted += outcome.children_deleted
                    task.bytes_reclaimed += outcome.bytes_reclaimed
                    task.errors.extend(outcome.errors)
                    skipped += outcome.skipped

                if token.cancelled:
                    task.status = (
                        CleanupTaskStatus.TIMED_OUT
                        if token.reason == CancellationReason.TIMED_OUT
                        else CleanupTaskStatus.ABORTED
                    )
                    task.warnings.append(
                        f"Cleanup {task.status.value}: {skipped} of {task.records_found} "
                        "records were not processed"
                    )
                else:
                    task.status = CleanupTaskStatus.COMPLETED
        finally:
            watchdog.cancel()
            with suppress(asyncio.CancelledError):
                await watchdog

        task.completed_at = self._clock()
        task.duration_ms = int((time.monotonic() - started) * 1000)
        task.verification_hash = compute_verification_hash(
            task.task_id, task.policy_id, task.records_deleted, task.records_archived
        )
        await self._store.put_task(task)

        summary = {
            "status": task.status.value,
            "policy_id": task.policy_id,
            "records_found": task.records_found,
            "records_deleted": task.records_deleted,
            "records_archived": task.records_archived,
            "children_deleted": task.children_deleted,
            "error_count": len(task.errors),
            "duration_ms": task.duration_ms,
        }
        await self._audit.append(
            stream=AuditStream.RETENTION,
            event_type=AuditEventType.CLEANUP_COMPLETED,
            payload={"task_id": task.task_id, **summary},
            actor_type="system",
            resource_type="cleanup_task",
            resource_id=task.task_id,
            summary=summary,
        )
        logger.info(
            "Cleanup finished: task_id=%s, status=%s, found=%d, deleted=%d, archived=%d, "
            "errors=%d, duration_ms=%d",
            task.task_id,
            task.status.value,
            task.records_found,
            task.records_deleted,
            task.records_archived,
            len(task.errors),
            task.duration_ms,
        )

        return CleanupReport(
            task_id=task.task_id,
            policy_id=task.policy_id,
            status=task.status,
            records_found=task.records_found,
            records_deleted=task.records_deleted,
            records_archived=task.records_archived,
            children_deleted=task.children_deleted,
            bytes_reclaimed=task.bytes_reclaimed,
            records_skipped=skipped,
            errors=list(task.errors),
            warnings=list(task.warnings),
            duration_ms=task.duration_ms,
            verification_hash=task.verification_hash,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )

    async def _watchdog(self, token: CancellationToken) -> None:
        try:
            await asyncio.wait_for(token.wait(), timeout=self._timeout_seconds)
        except TimeoutError:
            if token.cancel(CancellationReason.TIMED_OUT):
                logger.warning("Cleanup timed out after %ss", self._timeout_seconds)

    async def _discover(
        self,
        policy_id: str | None,
    ) -> tuple[list[RetentionRecord], dict[str, RetentionPolicy]]:
        if policy_id is not None:
            policy = await self._catalog.get_policy(policy_id)
            if policy is None:
                raise PolicyNotFoundError(policy_id)
            policies = [policy]
        else:
            policies = await self._catalog.list_policies(auto_cleanup=True)

        records: list[RetentionRecord] = []
        for policy in policies:
            records.extend(await self._catalog.find_expired(policy_id=policy.policy_id))
        records.sort(key=lambda r: (r.expires_at, r.data_id))
        return records, {p.policy_id: p for p in policies}

    async def _run_batches(
        self,
        batches: list[list[RetentionRecord]],
        policies: dict[str, RetentionPolicy],
        token: CancellationToken,
    ) -> list[BatchOutcome]:
        outcomes: list[BatchOutcome] = []

        if self._parallel:
            semaphore = asyncio.Semaphore(self._max_concurrent_batches)

            async def bounded(index: int, batch: list[RetentionRecord]) -> BatchOutcome:
                async with semaphore:
                    return await self._process_batch(index, batch, policies, token)

            results = await asyncio.gather(
                *(bounded(i, batch) for i, batch in enumerate(batches)),
                return_exceptions=True,
            )
            for index, result in enumerate(results):
                if isinstance(result, BaseException):
                    outcomes.append(self._failed_batch(index, batches[index], result))
                else:
                    outcomes.append(result)
            return outcomes

        for index, batch in enumerate(batches):
            try:
                outcomes.append(await self._process_batch(index, batch, policies, token))
            except Exception as e:
                outcomes.append(self._failed_batch(index, batch, e))
        return outcomes

    def _failed_batch(
        self,
        index: int,
        batch: list[RetentionRecord],
        error: BaseException,
    ) -> BatchOutcome:
        logger.error("Cleanup batch %d failed: %s", index, error)
        return BatchOutcome(index=index, skipped=len(batch), errors=[f"batch {index}: {error}"])

    async def _process_batch(
        self,
        index: int,
        batch: list[RetentionRecord],
        policies: dict[str, RetentionPolicy],
        token: CancellationToken,
    ) -> BatchOutcome:
        outcome = BatchOutcome(index=index)
        for record in batch:
            if token.cancelled:
                outcome.skipped += 1
                continue
            outcome.processed += 1
            try:
                await self._process_record(record, policies[record.policy_id], outcome)
            except Exception as e:
                logger.warning("Cleanup of record %s failed: %s", record.data_id, e)
                outcome.errors.append(f"{record.data_id}: {e}")
        logger.debug(
            "Cleanup batch %d done: deleted=%d, archived=%d, errors=%d",
            index,
            outcome.deleted,
            outcome.archived,
            len(outcome.errors),
        )
        return outcome

    async def _process_record(
        self,
        record: RetentionRecord,
        policy: RetentionPolicy,
        outcome: BatchOutcome,
    ) -> None:
        children = await self._store.list_child_records(record.data_id)
        size = estimate_record_size(record, children)
        outcome.children_deleted += await self._store.delete_child_records(record.data_id)

        if policy.archive_before_delete and not record.is_archived:
            await self._catalog.archive(record)
            outcome.archived += 1

        if policy.secure_delete and record.data_type == SESSION_DATA_TYPE:
            # Session data records are keyed by the id of the session they back
            await self._sessions.expire_now(record.data_id, ExpiryReason.RETENTION_EXPIRED)
        if await self._catalog.purge(record, secure=policy.secure_delete):
            outcome.deleted += 1
            outcome.bytes_reclaimed += size
