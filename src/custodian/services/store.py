"""Storage contract used by the engine services.

The store is the only shared mutable resource of the engine, and several
API and worker processes may share one store. Besides plain CRUD it
provides primitives that must be atomic in every backend:

- ``increment_if_below``: add to a quota counter only if the result stays
  within the limit, reporting whether the increment happened.
- ``append_audit``: allocate the next sequence number of an audit stream
  and link the new record to the previous one.
- ``create_session``: insert a session only if its id is free.
- ``update_session`` / ``purge_session``: read-decide-write on one session
  while holding it exclusively.
- ``start_task``: mark a cleanup task running only if no other task is.

Range queries over ``expires_at`` back the retention catalog.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from custodian.db.models.base import AuditStream
    from custodian.services.audit_log import AuditLogEntry
    from custodian.services.types import (
        ChildRecord,
        CleanupTask,
        QuotaUsage,
        RetentionPolicy,
        RetentionRecord,
        SessionMetadata,
    )

AuditEntryBuilder = Callable[[int, "str | None"], "AuditLogEntry"]
SessionChange = Callable[["SessionMetadata"], "SessionMetadata | None"]

# Error recorded on running tasks abandoned by a process that died mid-run
STALE_TASK_ERROR = "Task abandoned while running"


class StoreError(Exception):
    """Raised when the backing store fails an operation."""

    pass


class EngineStore(ABC):
    """Abstract persistence backend for sessions, quotas, retention and audit."""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_session(self, session_id: str) -> SessionMetadata | None:
        """Return a copy of the session, or None if unknown."""

    @abstractmethod
    async def put_session(self, session: SessionMetadata) -> None:
        """Insert or replace a session."""

    @abstractmethod
    async def create_session(self, session: SessionMetadata) -> bool:
        """Insert a session unless its id is already taken.

        Returns:
            False if a session with the same id exists; nothing is written.
        """

    @abstractmethod
    async def update_session(
        self,
        session_id: str,
        change: SessionChange,
    ) -> tuple[SessionMetadata | None, SessionMetadata | None]:
        """Apply ``change`` to a session while holding it exclusively.

        ``change`` receives a copy of the current state and returns the state
        to write, or None to leave the session untouched. Updates of the same
        session are serialized across every user of the store.

        Returns:
            Tuple of (state before the change, state written). The first item
            is None for unknown sessions, the second when nothing was written.
        """

    @abstractmethod
    async def purge_session(
        self,
        session_id: str,
        prepare: SessionChange,
    ) -> SessionMetadata | None:
        """Delete a session while holding it exclusively.

        ``prepare`` receives a copy of the current state and returns None to
        keep the session, or the state to persist right before the delete
        (an overwritten copy for secure wipes). A returned state equal to the
        current one is not written again. Write and delete are one atomic step.

        Returns:
            The state before the purge, or None if unknown or kept.
        """

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool:
        """Delete a session, returning False if it did not exist."""

    @abstractmethod
    async def list_sessions(self, owner_id: str | None = None) -> list[SessionMetadata]:
        """List sessions, optionally only those of one owner."""

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_quota(self, user_id: str, period_key: str) -> QuotaUsage | None:
        """Return the usage counter for a user and period, or None."""

    @abstractmethod
    async def increment_if_below(
        self,
        user_id: str,
        period_key: str,
        amount: int,
        limit: int,
    ) -> tuple[bool, int]:
        """Atomically add ``amount`` if ``used + amount <= limit``.

        The counter is created at zero on first use.

        Returns:
            Tuple of (incremented, used_count after the operation).
        """

    # ------------------------------------------------------------------
    # Retention policies and records
    # ------------------------------------------------------------------

    @abstractmethod
    async def put_policy(self, policy: RetentionPolicy) -> None:
        """Insert or replace a retention policy."""

    @abstractmethod
    async def get_policy(self, policy_id: str) -> RetentionPolicy | None:
        """Return a policy, or None if unknown."""

    @abstractmethod
    async def list_policies(self) -> list[RetentionPolicy]:
        """List all policies ordered by policy_id."""

    @abstractmethod
    async def put_record(self, record: RetentionRecord) -> None:
        """Insert or replace a retention record."""

    @abstractmethod
    async def get_record(self, data_id: str) -> RetentionRecord | None:
        """Return a copy of the record, or None if unknown."""

    @abstractmethod
    async def delete_record(self, data_id: str) -> bool:
        """Delete a record, returning False if it did not exist."""

    @abstractmethod
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
        """Range query over records ordered by expires_at.

        Args:
            expires_after: Exclusive lower bound on expires_at.
            expires_before: Inclusive upper bound on expires_at.
            policy_id: Only records of this policy.
            data_type: Only records of this data type.
            data_ids: Only records with one of these ids.
            include_archived: Whether archived records are returned.
        """

    @abstractmethod
    async def add_child_record(self, child: ChildRecord) -> None:
        """Attach a child record to its parent record."""

    @abstractmethod
    async def list_child_records(self, parent_id: str) -> list[ChildRecord]:
        """List child records owned by a parent record."""

    @abstractmethod
    async def delete_child_records(self, parent_id: str) -> int:
        """Delete all child records of a parent, returning how many were removed."""

    # ------------------------------------------------------------------
    # Cleanup tasks
    # ------------------------------------------------------------------

    @abstractmethod
    async def put_task(self, task: CleanupTask) -> None:
        """Insert or replace a cleanup task."""

    @abstractmethod
    async def start_task(
        self,
        task: CleanupTask,
        *,
        stale_before: datetime | None = None,
    ) -> list[str]:
        """Persist ``task`` as running unless another task is running.

        The caller sets the running status and start time on ``task``. Running
        tasks started before ``stale_before`` were left behind by a process
        that died mid-run; they are marked failed and do not block the start.

        Returns:
            Ids of the running tasks that blocked the start; empty on success.
        """

    @abstractmethod
    async def get_task(self, task_id: str) -> CleanupTask | None:
        """Return a copy of the task, or None if unknown."""

    @abstractmethod
    async def list_tasks(self, limit: int = 20) -> list[CleanupTask]:
        """List the most recently scheduled tasks, newest first."""

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    @abstractmethod
    async def append_audit(
        self,
        stream: AuditStream,
        build: AuditEntryBuilder,
    ) -> AuditLogEntry:
        """Append a record built from the next sequence number and previous hash.

        ``build`` receives ``(seq_no, prev_record_hash)`` and returns the entry
        to persist. Allocation and insert happen as one atomic step.
        """

    @abstractmethod
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
        """List audit records of a stream ordered by sequence number."""

    async def close(self) -> None:  # noqa: B027 - optional hook
        """Release backend resources."""
