"""PostgreSQL implementation of the engine store.

Each store call runs in its own transaction. The conditional primitives
rely on the database rather than on process-local locks, so several API
and worker processes can share one database:

- quota increments are a single ``UPDATE ... WHERE used_count + amount
  <= limit RETURNING`` after an idempotent ``INSERT ... ON CONFLICT DO
  NOTHING`` creates the counter row;
- audit appends lock the latest record of the stream with ``SELECT ...
  FOR UPDATE``; the unique (stream, seq_no) index rejects the rare fork
  when two writers start an empty stream, and the append is retried;
- session creation is ``INSERT ... ON CONFLICT DO NOTHING``, and session
  updates and purges hold the row with ``SELECT ... FOR UPDATE`` from the
  read to the write;
- a partial unique index allows at most one running cleanup task.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from custodian.db.models import (
    AuditLogRecord,
    CleanupTaskEntry,
    DailyQuota,
    RetentionEntry,
    RetentionPolicyEntry,
    RiskAssessment,
    TrackedSession,
)
from custodian.db.models.base import CleanupTaskStatus
from custodian.services.audit_log import AuditLogEntry
from custodian.services.store import STALE_TASK_ERROR, EngineStore, StoreError
from custodian.services.types import (
    ChildRecord,
    CleanupTask,
    QuotaUsage,
    RetentionPolicy,
    RetentionRecord,
    SessionMetadata,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from custodian.db.models.base import AuditStream
    from custodian.services.store import AuditEntryBuilder, SessionChange

logger = logging.getLogger(__name__)

# Attempts for an audit append that lost the race for a new stream's first slot
AUDIT_APPEND_ATTEMPTS = 3


class SqlStore(EngineStore):
    """SQLAlchemy async store over the Custodian schema.

    Example:
        store = SqlStore(get_session_factory(settings.database))
        arbiter = QuotaArbiter(store)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error("Store operation %s failed: %s", operation, str(e))
            raise StoreError(f"Store operation {operation} failed: {e}") from e

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> SessionMetadata | None:
        async with self._transaction("get_session") as session:
            row = await session.get(TrackedSession, session_id)
            return _session_from_row(row) if row else None

    async def put_session(self, metadata: SessionMetadata) -> None:
        async with self._transaction("put_session") as session:
            await session.merge(TrackedSession(**_session_values(metadata)))

    async def create_session(self, metadata: SessionMetadata) -> bool:
        async with self._transaction("create_session") as session:
            result = await session.execute(
                pg_insert(TrackedSession)
                .values(**_session_values(metadata))
                .on_conflict_do_nothing(index_elements=["session_id"])
                .returning(TrackedSession.session_id)
            )
            return result.scalar_one_or_none() is not None

    async def update_session(
        self,
        session_id: str,
        change: SessionChange,
    ) -> tuple[SessionMetadata | None, SessionMetadata | None]:
        async with self._transaction("update_session") as session:
            row = await _lock_session_row(session, session_id)
            if row is None:
                return None, None
            before = _session_from_row(row)
            updated = change(replace(before))
            if updated is not None:
                _apply_session(row, updated)
            return before, updated

    async def purge_session(
        self,
        session_id: str,
        prepare: SessionChange,
    ) -> SessionMetadata | None:
        async with self._transaction("purge_session") as session:
            row = await _lock_session_row(session, session_id)
            if row is None:
                return None
            before = _session_from_row(row)
            prepared = prepare(replace(before))
            if prepared is None:
                return None
            if prepared != before:
                # The overwrite reaches the table before the row is removed
                _apply_session(row, prepared)
                await session.flush()
            await session.delete(row)
            return before

    async def delete_session(self, session_id: str) -> bool:
        async with self._transaction("delete_session") as session:
            result = await session.execute(
                delete(TrackedSession)
                .where(TrackedSession.session_id == session_id)
                .returning(TrackedSession.session_id)
            )
            return result.scalar_one_or_none() is not None

    async def list_sessions(self, owner_id: str | None = None) -> list[SessionMetadata]:
        query = select(TrackedSession).order_by(TrackedSession.created_at)
        if owner_id is not None:
            query = query.where(TrackedSession.owner_id == owner_id)
        async with self._transaction("list_sessions") as session:
            result = await session.execute(query)
            return [_session_from_row(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------

    async def get_quota(self, user_id: str, period_key: str) -> QuotaUsage | None:
        async with self._transaction("get_quota") as session:
            row = await session.get(DailyQuota, (user_id, period_key))
            if row is None:
                return None
            return QuotaUsage(
                user_id=row.user_id,
                period_key=row.period_key,
                used_count=row.used_count,
                limit=row.daily_limit,
            )

    async def increment_if_below(
        self,
        user_id: str,
        period_key: str,
        amount: int,
        limit: int,
    ) -> tuple[bool, int]:
        async with self._transaction("increment_if_below") as session:
            await session.execute(
                pg_insert(DailyQuota)
                .values(user_id=user_id, period_key=period_key, used_count=0, daily_limit=limit)
                .on_conflict_do_nothing(index_elements=["user_id", "period_key"])
            )

            result = await session.execute(
                update(DailyQuota)
                .where(
                    DailyQuota.user_id == user_id,
                    DailyQuota.period_key == period_key,
                    DailyQuota.used_count + amount <= limit,
                )
                .values(
                    used_count=DailyQuota.used_count + amount,
                    daily_limit=limit,
                    updated_at=func.now(),
                )
                .returning(DailyQuota.used_count)
            )
            used = result.scalar_one_or_none()
            if used is not None:
                return True, used

            current = await session.execute(
                select(DailyQuota.used_count).where(
                    DailyQuota.user_id == user_id,
                    DailyQuota.period_key == period_key,
                )
            )
            return False, current.scalar_one()

    # ------------------------------------------------------------------
    # Retention policies and records
    # ------------------------------------------------------------------

    async def put_policy(self, policy: RetentionPolicy) -> None:
        async with self._transaction("put_policy") as session:
            await session.merge(
                RetentionPolicyEntry(
                    policy_id=policy.policy_id,
                    name=policy.name,
                    data_type=policy.data_type,
                    retention_seconds=int(policy.retention_period.total_seconds()),
                    notification_threshold_seconds=int(
                        policy.notification_threshold.total_seconds()
                    ),
                    auto_cleanup=policy.auto_cleanup,
                    secure_delete=policy.secure_delete,
                    archive_before_delete=policy.archive_before_delete,
                    description=policy.description,
                )
            )

    async def get_policy(self, policy_id: str) -> RetentionPolicy | None:
        async with self._transaction("get_policy") as session:
            row = await session.get(RetentionPolicyEntry, policy_id)
            return _policy_from_row(row) if row else None

    async def list_policies(self) -> list[RetentionPolicy]:
        async with self._transaction("list_policies") as session:
            result = await session.execute(
                select(RetentionPolicyEntry).order_by(RetentionPolicyEntry.policy_id)
            )
            return [_policy_from_row(row) for row in result.scalars().all()]

    async def put_record(self, record: RetentionRecord) -> None:
        async with self._transaction("put_record") as session:
            await session.merge(
                RetentionEntry(
                    data_id=record.data_id,
                    data_type=record.data_type,
                    content_hash=record.content_hash,
                    policy_id=record.policy_id,
                    registered_at=record.registered_at,
                    expires_at=record.expires_at,
                    last_accessed_at=record.last_accessed_at,
                    security_level=record.security_level,
                    is_archived=record.is_archived,
                    archive_ref=record.archive_ref,
                    record_metadata=record.metadata,
                )
            )

    async def get_record(self, data_id: str) -> RetentionRecord | None:
        async with self._transaction("get_record") as session:
            row = await session.get(RetentionEntry, data_id)
            return _record_from_row(row) if row else None

    async def delete_record(self, data_id: str) -> bool:
        async with self._transaction("delete_record") as session:
            result = await session.execute(
                delete(RetentionEntry)
                .where(RetentionEntry.data_id == data_id)
                .returning(RetentionEntry.data_id)
            )
            return result.scalar_one_or_none() is not None

    async def query_records(
        self,
        *,
        expires_after: datetime | None = None,
        expires_before: datetime | None = None,
        policy_id: str | None = None,
        data_type: str | None = None,
        data_ids: Sequence[str] | None = None,
        include_archived: bool = True,
    ) -> list[RetentionRecord]:
        query = select(RetentionEntry).order_by(RetentionEntry.expires_at, RetentionEntry.data_id)
        if expires_after is not None:
            query = query.where(RetentionEntry.expires_at > expires_after)
        if expires_before is not None:
            query = query.where(RetentionEntry.expires_at <= expires_before)
        if policy_id is not None:
            query = query.where(RetentionEntry.policy_id == policy_id)
        if data_type is not None:
            query = query.where(RetentionEntry.data_type == data_type)
        if data_ids is not None:
            query = query.where(RetentionEntry.data_id.in_(list(data_ids)))
        if not include_archived:
            query = query.where(RetentionEntry.is_archived.is_(False))

        async with self._transaction("query_records") as session:
            result = await session.execute(query)
            return [_record_from_row(row) for row in result.scalars().all()]

    async def add_child_record(self, child: ChildRecord) -> None:
        async with self._transaction("add_child_record") as session:
            entry = RiskAssessment(
                parent_id=child.parent_id,
                kind=child.kind,
                payload=child.payload,
            )
            if child.created_at is not None:
                entry.created_at = child.created_at
            session.add(entry)

    async def list_child_records(self, parent_id: str) -> list[ChildRecord]:
        async with self._transaction("list_child_records") as session:
            result = await session.execute(
                select(RiskAssessment)
                .where(RiskAssessment.parent_id == parent_id)
                .order_by(RiskAssessment.created_at)
            )
            return [
                ChildRecord(
                    child_id=str(row.assessment_id),
                    parent_id=row.parent_id,
                    kind=row.kind,
                    payload=row.payload or {},
                    created_at=row.created_at,
                )
                for row in result.scalars().all()
            ]

    async def delete_child_records(self, parent_id: str) -> int:
        async with self._transaction("delete_child_records") as session:
            result = await session.execute(
                delete(RiskAssessment)
                .where(RiskAssessment.parent_id == parent_id)
                .returning(RiskAssessment.assessment_id)
            )
            return len(result.scalars().all())

    # ------------------------------------------------------------------
    # Cleanup tasks
    # ------------------------------------------------------------------

    async def put_task(self, task: CleanupTask) -> None:
        async with self._transaction("put_task") as session:
            await session.merge(_task_to_row(task))

    async def start_task(
        self,
        task: CleanupTask,
        *,
        stale_before: datetime | None = None,
    ) -> list[str]:
        try:
            async with self._session_factory() as session, session.begin():
                if stale_before is not None:
                    await session.execute(
                        update(CleanupTaskEntry)
                        .where(
                            CleanupTaskEntry.status == CleanupTaskStatus.RUNNING,
                            CleanupTaskEntry.started_at < stale_before,
                        )
                        .values(
                            status=CleanupTaskStatus.FAILED,
                            errors=func.jsonb_build_array(STALE_TASK_ERROR),
                        )
                    )
                running = await _running_task_ids(session, task.task_id)
                if running:
                    return running
                await session.merge(_task_to_row(task))
            return []
        except IntegrityError:
            # Another process started a task between our check and our write;
            # the partial unique index on running tasks rejected ours
            logger.info("Cleanup start lost the race: task_id=%s", task.task_id)
        except SQLAlchemyError as e:
            logger.error("Store operation start_task failed: %s", str(e))
            raise StoreError(f"Store operation start_task failed: {e}") from e

        async with self._transaction("start_task") as session:
            # The winner may already be done; report our own id rather than success
            return await _running_task_ids(session, task.task_id) or [task.task_id]

    async def get_task(self, task_id: str) -> CleanupTask | None:
        async with self._transaction("get_task") as session:
            row = await session.get(CleanupTaskEntry, task_id)
            return _task_from_row(row) if row else None

    async def list_tasks(self, limit: int = 20) -> list[CleanupTask]:
        async with self._transaction("list_tasks") as session:
            result = await session.execute(
                select(CleanupTaskEntry).order_by(CleanupTaskEntry.scheduled_at.desc()).limit(limit)
            )
            return [_task_from_row(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def append_audit(
        self,
        stream: AuditStream,
        build: AuditEntryBuilder,
    ) -> AuditLogEntry:
        for attempt in range(1, AUDIT_APPEND_ATTEMPTS + 1):
            try:
                async with self._session_factory() as session, session.begin():
                    # Lock the stream head so concurrent appends serialize
                    result = await session.execute(
                        select(AuditLogRecord)
                        .where(AuditLogRecord.stream == stream)
                        .order_by(AuditLogRecord.seq_no.desc())
                        .limit(1)
                        .with_for_update()
                    )
                    latest = result.scalar_one_or_none()
                    if latest is None:
                        entry = build(1, None)
                    else:
                        entry = build(latest.seq_no + 1, latest.record_hash)

                    session.add(
                        AuditLogRecord(
                            record_id=entry.record_id,
                            stream=entry.stream,
                            seq_no=entry.seq_no,
                            record_hash=entry.record_hash,
                            prev_record_hash=entry.prev_record_hash,
                            event_type=entry.event_type,
                            actor_type=entry.actor_type,
                            actor_id=entry.actor_id,
                            resource_type=entry.resource_type,
                            resource_id=entry.resource_id,
                            payload_ref=entry.payload_ref,
                            summary=entry.summary,
                            created_at=entry.created_at,
                        )
                    )
                return entry
            except IntegrityError:
                if attempt == AUDIT_APPEND_ATTEMPTS:
                    raise StoreError(f"Audit append to {stream.value} kept conflicting") from None
                logger.warning(
                    "Audit sequence conflict on stream %s, retrying (attempt %d)",
                    stream.value,
                    attempt,
                )
            except SQLAlchemyError as e:
                logger.error("Audit append to %s failed: %s", stream.value, str(e))
                raise StoreError(f"Audit append failed: {e}") from e

        raise StoreError(f"Audit append to {stream.value} kept conflicting")

    async def list_audit(
        self,
        stream: AuditStream,
        *,
        event_type: str | None = None,
        actor_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        start_seq: int | None = None,
        end_seq: int | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        query = (
            select(AuditLogRecord)
            .where(AuditLogRecord.stream == stream)
            .order_by(AuditLogRecord.seq_no)
        )
        if event_type is not None:
            query = query.where(AuditLogRecord.event_type == event_type)
        if actor_id is not None:
            query = query.where(AuditLogRecord.actor_id == actor_id)
        if resource_type is not None:
            query = query.where(AuditLogRecord.resource_type == resource_type)
        if resource_id is not None:
            query = query.where(AuditLogRecord.resource_id == resource_id)
        if start_seq is not None:
            query = query.where(AuditLogRecord.seq_no >= start_seq)
        if end_seq is not None:
            query = query.where(AuditLogRecord.seq_no <= end_seq)
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        async with self._transaction("list_audit") as session:
            result = await session.execute(query)
            return [_audit_from_row(row) for row in result.scalars().all()]


def _session_values(metadata: SessionMetadata) -> dict:
    return {
        "session_id": metadata.session_id,
        "owner_id": metadata.owner_id,
        "created_at": metadata.created_at,
        "expires_at": metadata.expires_at,
        "last_accessed_at": metadata.last_accessed_at,
        "extension_count": metadata.extension_count,
        "max_extensions": metadata.max_extensions,
        "grace_period_ends_at": metadata.grace_period_ends_at,
        "security_level": metadata.security_level,
        "data_classification": metadata.data_classification,
    }


def _apply_session(row: TrackedSession, metadata: SessionMetadata) -> None:
    for key, value in _session_values(metadata).items():
        if key != "session_id":
            setattr(row, key, value)


async def _lock_session_row(session: AsyncSession, session_id: str) -> TrackedSession | None:
    result = await session.execute(
        select(TrackedSession).where(TrackedSession.session_id == session_id).with_for_update()
    )
    return result.scalar_one_or_none()


async def _running_task_ids(session: AsyncSession, exclude: str) -> list[str]:
    result = await session.execute(
        select(CleanupTaskEntry.task_id).where(
            CleanupTaskEntry.status == CleanupTaskStatus.RUNNING,
            CleanupTaskEntry.task_id != exclude,
        )
    )
    return list(result.scalars().all())


def _task_to_row(task: CleanupTask) -> CleanupTaskEntry:
    return CleanupTaskEntry(
        task_id=task.task_id,
        policy_id=task.policy_id,
        status=task.status,
        scheduled_at=task.scheduled_at,
        started_at=task.started_at,
        completed_at=task.completed_at,
        records_found=task.records_found,
        records_deleted=task.records_deleted,
        records_archived=task.records_archived,
        children_deleted=task.children_deleted,
        bytes_reclaimed=task.bytes_reclaimed,
        duration_ms=task.duration_ms,
        errors=list(task.errors),
        warnings=list(task.warnings),
        target_ids=list(task.target_ids),
        verification_hash=task.verification_hash,
    )


def _session_from_row(row: TrackedSession) -> SessionMetadata:
    return SessionMetadata(
        session_id=row.session_id,
        owner_id=row.owner_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
        last_accessed_at=row.last_accessed_at,
        security_level=row.security_level,
        data_classification=row.data_classification,
        max_extensions=row.max_extensions,
        extension_count=row.extension_count,
        grace_period_ends_at=row.grace_period_ends_at,
    )


def _policy_from_row(row: RetentionPolicyEntry) -> RetentionPolicy:
    return RetentionPolicy(
        policy_id=row.policy_id,
        name=row.name,
        data_type=row.data_type,
        retention_period=timedelta(seconds=row.retention_seconds),
        auto_cleanup=row.auto_cleanup,
        secure_delete=row.secure_delete,
        archive_before_delete=row.archive_before_delete,
        notification_threshold=timedelta(seconds=row.notification_threshold_seconds),
        description=row.description,
    )


def _record_from_row(row: RetentionEntry) -> RetentionRecord:
    return RetentionRecord(
        data_id=row.data_id,
        data_type=row.data_type,
        content_hash=row.content_hash,
        policy_id=row.policy_id,
        registered_at=row.registered_at,
        expires_at=row.expires_at,
        last_accessed_at=row.last_accessed_at,
        security_level=row.security_level,
        metadata=dict(row.record_metadata or {}),
        is_archived=row.is_archived,
        archive_ref=row.archive_ref,
    )


def _task_from_row(row: CleanupTaskEntry) -> CleanupTask:
    return CleanupTask(
        task_id=row.task_id,
        policy_id=row.policy_id,
        scheduled_at=row.scheduled_at,
        status=row.status,
        started_at=row.started_at,
        completed_at=row.completed_at,
        records_found=row.records_found,
        records_deleted=row.records_deleted,
        records_archived=row.records_archived,
        children_deleted=row.children_deleted,
        bytes_reclaimed=row.bytes_reclaimed,
        errors=list(row.errors or []),
        warnings=list(row.warnings or []),
        duration_ms=row.duration_ms,
        target_ids=list(row.target_ids or []),
        verification_hash=row.verification_hash,
    )


def _audit_from_row(row: AuditLogRecord) -> AuditLogEntry:
    return AuditLogEntry(
        record_id=row.record_id,
        stream=row.stream,
        seq_no=row.seq_no,
        record_hash=row.record_hash,
        prev_record_hash=row.prev_record_hash,
        event_type=row.event_type,
        actor_type=row.actor_type,
        actor_id=row.actor_id,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        payload_ref=row.payload_ref,
        summary=row.summary,
        created_at=row.created_at,
    )
