"""Tests for the PostgreSQL store using mocked SQLAlchemy sessions.

Tests cover:
- Quota conditional increment outcomes
- Row to domain conversion
- Error wrapping into StoreError
- Audit append sequencing and retry on sequence conflicts
- Session insert-if-absent, row-locked update and purge statements
- Single running cleanup task guard
- Written values checked against the table constraints
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.schema import CreateIndex

from custodian.db import to_async_url
from custodian.db.models import CleanupTaskEntry, TrackedSession
from custodian.db.models.base import (
    AuditStream,
    CleanupTaskStatus,
    DataClassification,
    SecurityLevel,
)
from custodian.services.audit_log import AuditLogEntry
from custodian.services.secure_wipe import secure_wipe
from custodian.services.sql_store import AUDIT_APPEND_ATTEMPTS, SqlStore
from custodian.services.store import StoreError
from custodian.services.types import CleanupTask, SessionMetadata

NOW = datetime(2025, 3, 10, 3, 0, tzinfo=UTC)


def make_session() -> MagicMock:
    """Create a mock AsyncSession whose begin() works as an async context manager."""
    session = MagicMock()
    session.begin.return_value.__aenter__ = AsyncMock(return_value=None)
    session.begin.return_value.__aexit__ = AsyncMock(return_value=False)
    session.execute = AsyncMock()
    session.get = AsyncMock()
    session.merge = AsyncMock()
    session.flush = AsyncMock()
    session.delete = AsyncMock()
    return session


def make_factory(*sessions: MagicMock) -> MagicMock:
    """Create a session factory handing out the given sessions in order."""
    contexts = []
    for session in sessions:
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=session)
        context.__aexit__ = AsyncMock(return_value=False)
        contexts.append(context)
    return MagicMock(side_effect=contexts)


def scalar_result(value) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    result.scalar_one.return_value = value
    return result


def build_entry(seq_no: int, prev_hash: str | None) -> AuditLogEntry:
    return AuditLogEntry(
        record_id=uuid.uuid4(),
        stream=AuditStream.OPS,
        seq_no=seq_no,
        record_hash=f"{seq_no:064x}",
        prev_record_hash=prev_hash,
        event_type="maintenance_completed",
        actor_type="system",
        actor_id=None,
        resource_type=None,
        resource_id=None,
        payload_ref="inline:test",
        summary=None,
        created_at=NOW,
    )


class TestQuotaIncrement:
    """Tests for increment_if_below."""

    @pytest.mark.asyncio
    async def test_allowed(self):
        session = make_session()
        session.execute.side_effect = [MagicMock(), scalar_result(2)]
        store = SqlStore(make_factory(session))

        assert await store.increment_if_below("user-1", "2025-03-10", 1, 3) == (True, 2)
        assert session.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_denied_reports_current_usage(self):
        session = make_session()
        session.execute.side_effect = [MagicMock(), scalar_result(None), scalar_result(3)]
        store = SqlStore(make_factory(session))

        assert await store.increment_if_below("user-1", "2025-03-10", 1, 3) == (False, 3)


class TestRowConversion:
    """Tests for reading rows into domain records."""

    @pytest.mark.asyncio
    async def test_get_session_missing(self):
        session = make_session()
        session.get.return_value = None
        store = SqlStore(make_factory(session))

        assert await store.get_session("missing") is None

    @pytest.mark.asyncio
    async def test_get_session(self):
        row = MagicMock(
            session_id="s1",
            owner_id="user-1",
            created_at=NOW,
            expires_at=NOW + timedelta(hours=24),
            last_accessed_at=NOW,
            security_level=SecurityLevel.ENHANCED,
            data_classification=DataClassification.INTERNAL,
            max_extensions=2,
            extension_count=1,
            grace_period_ends_at=None,
        )
        session = make_session()
        session.get.return_value = row
        store = SqlStore(make_factory(session))

        metadata = await store.get_session("s1")

        assert metadata.session_id == "s1"
        assert metadata.security_level == SecurityLevel.ENHANCED
        assert metadata.extension_count == 1
        assert metadata.effective_expiry == NOW + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_get_policy_converts_seconds(self):
        row = MagicMock(
            policy_id="session-data",
            data_type="session_data",
            retention_seconds=30 * 86400,
            notification_threshold_seconds=3 * 86400,
            auto_cleanup=True,
            secure_delete=True,
            archive_before_delete=False,
            description=None,
        )
        row.name = "Session Data"
        session = make_session()
        session.get.return_value = row
        store = SqlStore(make_factory(session))

        policy = await store.get_policy("session-data")

        assert policy.name == "Session Data"
        assert policy.retention_period == timedelta(days=30)
        assert policy.notification_threshold == timedelta(days=3)


class TestErrorHandling:
    """Tests for error wrapping."""

    @pytest.mark.asyncio
    async def test_database_error_becomes_store_error(self):
        session = make_session()
        session.get.side_effect = OperationalError("SELECT", {}, Exception("connection lost"))
        store = SqlStore(make_factory(session))

        with pytest.raises(StoreError, match="get_record"):
            await store.get_record("doc-1")


class TestAuditAppend:
    """Tests for append_audit."""

    @pytest.mark.asyncio
    async def test_first_record_of_stream(self):
        session = make_session()
        session.execute.return_value = scalar_result(None)
        store = SqlStore(make_factory(session))

        entry = await store.append_audit(AuditStream.OPS, build_entry)

        assert entry.seq_no == 1
        assert entry.prev_record_hash is None
        session.add.assert_called_once()

    @pytest.mark.asyncio
    async def test_links_to_stream_head(self):
        head = MagicMock(seq_no=7, record_hash="a" * 64)
        session = make_session()
        session.execute.return_value = scalar_result(head)
        store = SqlStore(make_factory(session))

        entry = await store.append_audit(AuditStream.OPS, build_entry)

        assert entry.seq_no == 8
        assert entry.prev_record_hash == "a" * 64

    @pytest.mark.asyncio
    async def test_retries_on_sequence_conflict(self):
        conflict = IntegrityError("INSERT", {}, Exception("duplicate key"))
        first = make_session()
        first.execute.return_value = scalar_result(None)
        first.begin.return_value.__aexit__ = AsyncMock(side_effect=conflict)
        second = make_session()
        second.execute.return_value = scalar_result(MagicMock(seq_no=1, record_hash="b" * 64))
        store = SqlStore(make_factory(first, second))

        entry = await store.append_audit(AuditStream.OPS, build_entry)

        assert entry.seq_no == 2
        assert entry.prev_record_hash == "b" * 64

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_conflicts(self):
        sessions = []
        for _ in range(AUDIT_APPEND_ATTEMPTS):
            session = make_session()
            session.execute.return_value = scalar_result(None)
            session.begin.return_value.__aexit__ = AsyncMock(
                side_effect=IntegrityError("INSERT", {}, Exception("duplicate key"))
            )
            sessions.append(session)
        store = SqlStore(make_factory(*sessions))

        with pytest.raises(StoreError, match="kept conflicting"):
            await store.append_audit(AuditStream.OPS, build_entry)


class TestAsyncUrl:
    """Tests for the async driver URL rewrite."""

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("postgresql://u:p@db/custodian", "postgresql+psycopg://u:p@db/custodian"),
            ("postgres://u:p@db/custodian", "postgresql+psycopg://u:p@db/custodian"),
            ("postgresql+psycopg://u:p@db/custodian", "postgresql+psycopg://u:p@db/custodian"),
        ],
    )
    def test_rewrites_scheme(self, url, expected):
        assert to_async_url(url) == expected


def compiled(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))


def scalars_result(values) -> MagicMock:
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(values)
    return result


def session_row(**overrides) -> MagicMock:
    values = {
        "session_id": "s1",
        "owner_id": "user-1",
        "created_at": NOW,
        "expires_at": NOW + timedelta(hours=24),
        "last_accessed_at": NOW,
        "security_level": SecurityLevel.MAXIMUM,
        "data_classification": DataClassification.INTERNAL,
        "max_extensions": 1,
        "extension_count": 0,
        "grace_period_ends_at": None,
    }
    values.update(overrides)
    return MagicMock(**values)


def row_values(row, table) -> dict:
    return {column.name: getattr(row, column.name) for column in table.columns}


def new_session(session_id: str = "s1") -> SessionMetadata:
    return SessionMetadata(
        session_id=session_id,
        owner_id="user-1",
        created_at=NOW,
        expires_at=NOW + timedelta(hours=24),
        last_accessed_at=NOW,
        security_level=SecurityLevel.STANDARD,
        data_classification=DataClassification.PUBLIC,
        max_extensions=3,
    )


def extend_once(session: SessionMetadata) -> SessionMetadata | None:
    if session.extension_count >= session.max_extensions:
        return None
    session.extension_count += 1
    session.expires_at += timedelta(hours=1)
    return session


class TestSessionPrimitives:
    """Tests for create, update and purge of sessions."""

    @pytest.mark.asyncio
    async def test_create_inserts_only_if_absent(self, row_check):
        session = make_session()
        session.execute.return_value = scalar_result("s1")
        store = SqlStore(make_factory(session))

        assert await store.create_session(new_session()) is True

        statement = session.execute.await_args.args[0]
        sql = compiled(statement)
        assert "INSERT INTO tracked_sessions" in sql
        assert "ON CONFLICT (session_id) DO NOTHING" in sql
        assert "RETURNING tracked_sessions.session_id" in sql
        row_check(
            TrackedSession.__table__, statement.compile(dialect=postgresql.dialect()).params
        )
        session.merge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_refused_when_taken(self):
        session = make_session()
        session.execute.return_value = scalar_result(None)
        store = SqlStore(make_factory(session))

        assert await store.create_session(new_session()) is False

    @pytest.mark.asyncio
    async def test_update_holds_row_lock(self, row_check):
        row = session_row()
        session = make_session()
        session.execute.return_value = scalar_result(row)
        store = SqlStore(make_factory(session))

        before, written = await store.update_session("s1", extend_once)

        assert "FOR UPDATE" in compiled(session.execute.await_args.args[0])
        assert before.extension_count == 0
        assert written.extension_count == 1
        assert row.extension_count == 1
        assert row.expires_at == NOW + timedelta(hours=25)
        row_check(TrackedSession.__table__, row_values(row, TrackedSession.__table__))

    @pytest.mark.asyncio
    async def test_declined_update_writes_nothing(self):
        row = session_row(extension_count=1)
        session = make_session()
        session.execute.return_value = scalar_result(row)
        store = SqlStore(make_factory(session))

        before, written = await store.update_session("s1", extend_once)

        assert before.extension_count == 1
        assert written is None
        assert row.extension_count == 1
        assert row.expires_at == NOW + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_update_unknown_session(self):
        session = make_session()
        session.execute.return_value = scalar_result(None)
        store = SqlStore(make_factory(session))

        assert await store.update_session("missing", extend_once) == (None, None)

    @pytest.mark.asyncio
    async def test_purge_flushes_overwrite_before_delete(self, row_check):
        row = session_row()
        calls = []
        session = make_session()
        session.execute.return_value = scalar_result(row)
        session.flush.side_effect = lambda: calls.append(("flush", row.owner_id))
        session.delete.side_effect = lambda target: calls.append(("delete", target.owner_id))
        store = SqlStore(make_factory(session))

        def wipe(metadata):
            secure_wipe(metadata, keep=("session_id",))
            return metadata

        before = await store.purge_session("s1", wipe)

        assert "FOR UPDATE" in compiled(session.execute.await_args.args[0])
        assert before.owner_id == "user-1"
        (flushed, deleted) = calls
        assert flushed == deleted
        assert flushed[1] != "user-1"
        assert len(flushed[1]) == len("user-1")
        assert row.session_id == "s1"
        row_check(TrackedSession.__table__, row_values(row, TrackedSession.__table__))

    @pytest.mark.asyncio
    async def test_purge_without_overwrite_only_deletes(self):
        row = session_row()
        session = make_session()
        session.execute.return_value = scalar_result(row)
        store = SqlStore(make_factory(session))

        assert (await store.purge_session("s1", lambda metadata: metadata)).session_id == "s1"

        session.flush.assert_not_awaited()
        session.delete.assert_awaited_once_with(row)

    @pytest.mark.asyncio
    async def test_purge_kept_session(self):
        session = make_session()
        session.execute.return_value = scalar_result(session_row())
        store = SqlStore(make_factory(session))

        assert await store.purge_session("s1", lambda metadata: None) is None
        session.delete.assert_not_awaited()


def running_task(task_id: str = "t1") -> CleanupTask:
    return CleanupTask(
        task_id=task_id,
        policy_id=None,
        scheduled_at=NOW,
        status=CleanupTaskStatus.RUNNING,
        started_at=NOW,
    )


class TestStartTask:
    """Tests for the single running cleanup task guard."""

    def test_schema_allows_one_running_task(self):
        (index,) = [
            i for i in CleanupTaskEntry.__table__.indexes
            if i.name == "ux_cleanup_tasks_single_running"
        ]
        sql = str(CreateIndex(index).compile(dialect=postgresql.dialect()))

        assert sql.startswith("CREATE UNIQUE INDEX")
        # Enum columns store member names
        assert f"WHERE status = '{CleanupTaskStatus.RUNNING.name}'" in sql

    @pytest.mark.asyncio
    async def test_starts_when_nothing_runs(self, row_check):
        session = make_session()
        session.execute.side_effect = [MagicMock(), scalars_result([])]
        store = SqlStore(make_factory(session))

        blocking = await store.start_task(running_task(), stale_before=NOW - timedelta(hours=1))

        assert blocking == []
        stale_update = compiled(session.execute.await_args_list[0].args[0])
        assert "UPDATE cleanup_tasks SET status=" in stale_update
        assert "jsonb_build_array" in stale_update
        row = session.merge.await_args.args[0]
        assert row.status == CleanupTaskStatus.RUNNING
        row_check(CleanupTaskEntry.__table__, row_values(row, CleanupTaskEntry.__table__))

    @pytest.mark.asyncio
    async def test_blocked_by_running_task(self):
        session = make_session()
        session.execute.return_value = scalars_result(["other"])
        store = SqlStore(make_factory(session))

        assert await store.start_task(running_task()) == ["other"]
        session.merge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_race_reports_winner(self):
        first = make_session()
        first.execute.return_value = scalars_result([])
        first.begin.return_value.__aexit__ = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("duplicate key"))
        )
        second = make_session()
        second.execute.return_value = scalars_result(["winner"])
        store = SqlStore(make_factory(first, second))

        assert await store.start_task(running_task()) == ["winner"]

    @pytest.mark.asyncio
    async def test_lost_race_to_finished_run(self):
        first = make_session()
        first.execute.return_value = scalars_result([])
        first.begin.return_value.__aexit__ = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("duplicate key"))
        )
        second = make_session()
        second.execute.return_value = scalars_result([])
        store = SqlStore(make_factory(first, second))

        assert await store.start_task(running_task("t1")) == ["t1"]
