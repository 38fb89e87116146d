"""In-process implementation of the engine store.

Used for development, tests and single-process deployments. All state
lives in dictionaries; copies are handed out so callers can only change
state by writing it back. The conditional primitives run under a single
asyncio lock.
"""

from __future__ import annotations

import asyncio
import copy
from typing import TYPE_CHECKING

from custodian.db.models.base import CleanupTaskStatus
from custodian.services.store import STALE_TASK_ERROR, EngineStore
from custodian.services.types import QuotaUsage

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from custodian.db.models.base import AuditStream
    from custodian.services.audit_log import AuditLogEntry
    from custodian.services.store import AuditEntryBuilder, SessionChange
    from custodian.services.types import (
        ChildRecord,
        CleanupTask,
        RetentionPolicy,
        RetentionRecord,
        SessionMetadata,
    )


class MemoryStore(EngineStore):
    """Dictionary-backed store."""

    def __init__(self) -> None:
        self._sessions: dict[str, SessionMetadata] = {}
        self._quotas: dict[tuple[str, str], QuotaUsage] = {}
        self._policies: dict[str, RetentionPolicy] = {}
        self._records: dict[str, RetentionRecord] = {}
        self._children: dict[str, list[ChildRecord]] = {}
        self._tasks: dict[str, CleanupTask] = {}
        self._audit: dict[AuditStream, list[AuditLogEntry]] = {}
        self._lock = asyncio.Lock()

    # Sessions

    async def get_session(self, session_id: str) -> SessionMetadata | None:
        return copy.deepcopy(self._sessions.get(session_id))

    async def put_session(self, session: SessionMetadata) -> None:
        self._sessions[session.session_id] = copy.deepcopy(session)

    async def create_session(self, session: SessionMetadata) -> bool:
        async with self._lock:
            if session.session_id in self._sessions:
                return False
            self._sessions[session.session_id] = copy.deepcopy(session)
            return True

    async def update_session(
        self,
        session_id: str,
        change: SessionChange,
    ) -> tuple[SessionMetadata | None, SessionMetadata | None]:
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                return None, None
            before = copy.deepcopy(current)
            updated = change(copy.deepcopy(current))
            if updated is not None:
                self._sessions[session_id] = copy.deepcopy(updated)
            return before, copy.deepcopy(updated)

    async def purge_session(
        self,
        session_id: str,
        prepare: SessionChange,
    ) -> SessionMetadata | None:
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                return None
            before = copy.deepcopy(current)
            prepared = prepare(copy.deepcopy(current))
            if prepared is None:
                return None
            if prepared != before:
                self._sessions[session_id] = copy.deepcopy(prepared)
            del self._sessions[session_id]
            return before

    async def delete_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    async def list_sessions(self, owner_id: str | None = None) -> list[SessionMetadata]:
        return [
            copy.deepcopy(s)
            for s in self._sessions.values()
            if owner_id is None or s.owner_id == owner_id
        ]

    # Quota

    async def get_quota(self, user_id: str, period_key: str) -> QuotaUsage | None:
        return copy.deepcopy(self._quotas.get((user_id, period_key)))

    async def increment_if_below(
        self,
        user_id: str,
        period_key: str,
        amount: int,
        limit: int,
    ) -> tuple[bool, int]:
        async with self._lock:
            usage = self._quotas.setdefault(
                (user_id, period_key),
                QuotaUsage(user_id=user_id, period_key=period_key, used_count=0, limit=limit),
            )
            usage.limit = limit
            if usage.used_count + amount > limit:
                return False, usage.used_count
            usage.used_count += amount
            return True, usage.used_count

    # Retention policies and records

    async def put_policy(self, policy: RetentionPolicy) -> None:
        self._policies[policy.policy_id] = policy

    async def get_policy(self, policy_id: str) -> RetentionPolicy | None:
        return self._policies.get(policy_id)

    async def list_policies(self) -> list[RetentionPolicy]:
        return [self._policies[key] for key in sorted(self._policies)]

    async def put_record(self, record: RetentionRecord) -> None:
        self._records[record.data_id] = copy.deepcopy(record)

    async def get_record(self, data_id: str) -> RetentionRecord | None:
        return copy.deepcopy(self._records.get(data_id))

    async def delete_record(self, data_id: str) -> bool:
        return self._records.pop(data_id, None) is not None

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
        wanted = set(data_ids) if data_ids is not None else None
        matches = [
            record
            for record in self._records.values()
            if (expires_after is None or record.expires_at > expires_after)
            and (expires_before is None or record.expires_at <= expires_before)
            and (policy_id is None or record.policy_id == policy_id)
            and (data_type is None or record.data_type == data_type)
            and (wanted is None or record.data_id in wanted)
            and (include_archived or not record.is_archived)
        ]
        matches.sort(key=lambda r: (r.expires_at, r.data_id))
        return copy.deepcopy(matches)

    async def add_child_record(self, child: ChildRecord) -> None:
        self._children.setdefault(child.parent_id, []).append(copy.deepcopy(child))

    async def list_child_records(self, parent_id: str) -> list[ChildRecord]:
        return copy.deepcopy(self._children.get(parent_id, []))

    async def delete_child_records(self, parent_id: str) -> int:
        return len(self._children.pop(parent_id, []))

    # Cleanup tasks

    async def put_task(self, task: CleanupTask) -> None:
        self._tasks[task.task_id] = copy.deepcopy(task)

    async def start_task(
        self,
        task: CleanupTask,
        *,
        stale_before: datetime | None = None,
    ) -> list[str]:
        async with self._lock:
            running = []
            for other in self._tasks.values():
                if other.status != CleanupTaskStatus.RUNNING or other.task_id == task.task_id:
                    continue
                stale = stale_before is not None and other.started_at is not None
                if stale and other.started_at < stale_before:
                    other.status = CleanupTaskStatus.FAILED
                    other.errors.append(STALE_TASK_ERROR)
                    continue
                running.append(other.task_id)
            if running:
                return running
            self._tasks[task.task_id] = copy.deepcopy(task)
            return []

    async def get_task(self, task_id: str) -> CleanupTask | None:
        return copy.deepcopy(self._tasks.get(task_id))

    async def list_tasks(self, limit: int = 20) -> list[CleanupTask]:
        ordered = sorted(self._tasks.values(), key=lambda t: t.scheduled_at, reverse=True)
        return copy.deepcopy(ordered[:limit])

    # Audit

    async def append_audit(
        self,
        stream: AuditStream,
        build: AuditEntryBuilder,
    ) -> AuditLogEntry:
        async with self._lock:
            chain = self._audit.setdefault(stream, [])
            if chain:
                entry = build(chain[-1].seq_no + 1, chain[-1].record_hash)
            else:
                entry = build(1, None)
            chain.append(entry)
            return entry

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
        matches = [
            entry
            for entry in self._audit.get(stream, [])
            if (event_type is None or entry.event_type == event_type)
            and (actor_id is None or entry.actor_id == actor_id)
            and (resource_type is None or entry.resource_type == resource_type)
            and (resource_id is None or entry.resource_id == resource_id)
            and (start_seq is None or entry.seq_no >= start_seq)
            and (end_seq is None or entry.seq_no <= end_seq)
        ]
        matches = matches[offset:]
        if limit is not None:
            matches = matches[:limit]
        return matches
