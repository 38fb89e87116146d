"""Pytest configuration and shared fixtures.

All engine tests run against the in-memory store with a controllable
clock, so time-dependent behaviour is tested by moving the clock rather
than by sleeping.
"""

from __future__ import annotations

import hashlib
from collections.abc import AsyncGenerator
from dataclasses import asdict
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import Enum, String, Table

from custodian.api import create_app
from custodian.core.config import Environment, Settings, StoreBackend
from custodian.db.models import CleanupTaskEntry, RetentionEntry, TrackedSession
from custodian.services.audit_log import AuditLogService
from custodian.services.cleanup import CleanupScheduler
from custodian.services.engine import Engine, build_engine
from custodian.services.memory_store import MemoryStore
from custodian.services.quota import QuotaArbiter
from custodian.services.retention import RetentionCatalog
from custodian.services.session_lifecycle import SessionLifecycleManager
from custodian.services.store import StoreError

# 12:00 in Seoul on 2025-03-10
START_TIME = datetime(2025, 3, 10, 3, 0, tzinfo=UTC)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def content_hash(value: str) -> str:
    """SHA-256 hex digest used as a record content hash in tests."""
    return hashlib.sha256(value.encode()).hexdigest()


def check_row(table: Table, values: dict[str, Any]) -> None:
    """Raise StoreError if ``values`` would violate a column constraint of ``table``.

    Covers NOT NULL, string lengths, enum membership and timezone-aware
    timestamps, which are what the database enforces on these tables.
    """
    for column in table.columns:
        if column.name not in values:
            continue
        value = values[column.name]
        if value is None:
            if not column.nullable:
                raise StoreError(f"{table.name}.{column.name} violates NOT NULL")
            continue
        if isinstance(column.type, Enum):
            if column.type.enum_class and not isinstance(value, column.type.enum_class):
                raise StoreError(f"{table.name}.{column.name} is not a valid enum value")
        elif isinstance(column.type, String) and column.type.length:
            if len(value) > column.type.length:
                raise StoreError(f"{table.name}.{column.name} exceeds {column.type.length}")
        if isinstance(value, datetime) and value.tzinfo is None:
            raise StoreError(f"{table.name}.{column.name} is a naive timestamp")


class ConstraintCheckingStore(MemoryStore):
    """Memory store that rejects writes the SQL schema would reject.

    Rows are checked against the ORM tables, and records must reference a
    stored policy like the retention_records foreign key requires. Every
    record written is kept in ``written_records`` in order.
    """

    def __init__(self) -> None:
        super().__init__()
        self.written_records = []

    def _check_session(self, session):
        check_row(TrackedSession.__table__, asdict(session))
        return session

    async def put_session(self, session):
        await super().put_session(self._check_session(session))

    async def create_session(self, session):
        return await super().create_session(self._check_session(session))

    async def update_session(self, session_id, change):
        def checked(session):
            updated = change(session)
            return updated if updated is None else self._check_session(updated)

        return await super().update_session(session_id, checked)

    async def purge_session(self, session_id, prepare):
        def checked(session):
            prepared = prepare(session)
            return prepared if prepared is None else self._check_session(prepared)

        return await super().purge_session(session_id, checked)

    async def put_record(self, record):
        check_row(RetentionEntry.__table__, asdict(record))
        if record.policy_id not in self._policies:
            raise StoreError(f"retention_records.policy_id {record.policy_id!r} has no policy")
        self.written_records.append(asdict(record))
        await super().put_record(record)

    async def put_task(self, task):
        check_row(CleanupTaskEntry.__table__, asdict(task))
        await super().put_task(task)

    async def start_task(self, task, *, stale_before=None):
        check_row(CleanupTaskEntry.__table__, asdict(task))
        return await super().start_task(task, stale_before=stale_before)


# ---------------------------------------------------------------------------
# Engine component fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def checked_store() -> ConstraintCheckingStore:
    return ConstraintCheckingStore()


@pytest.fixture
def audit(store: MemoryStore, clock: FrozenClock) -> AuditLogService:
    return AuditLogService(store, clock=clock)


@pytest.fixture
def sessions(
    store: MemoryStore, audit: AuditLogService, clock: FrozenClock
) -> SessionLifecycleManager:
    return SessionLifecycleManager(store, audit, clock=clock)


@pytest.fixture
def quota(store: MemoryStore, audit: AuditLogService, clock: FrozenClock) -> QuotaArbiter:
    return QuotaArbiter(store, daily_limit=3, audit=audit, clock=clock)


@pytest.fixture
async def catalog(
    store: MemoryStore, audit: AuditLogService, clock: FrozenClock
) -> RetentionCatalog:
    catalog = RetentionCatalog(store, audit, clock=clock)
    await catalog.install_default_policies()
    return catalog


@pytest.fixture
def cleanup(
    store: MemoryStore,
    catalog: RetentionCatalog,
    sessions: SessionLifecycleManager,
    audit: AuditLogService,
    clock: FrozenClock,
) -> CleanupScheduler:
    return CleanupScheduler(
        store,
        catalog,
        sessions,
        audit,
        batch_size=3,
        parallel=True,
        max_concurrent_batches=2,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Application fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def settings() -> Settings:
    return Settings(environment=Environment.DEV, store_backend=StoreBackend.MEMORY)


@pytest.fixture
async def engine(settings: Settings, clock: FrozenClock) -> Engine:
    engine = build_engine(settings, store=MemoryStore(), clock=clock)
    await engine.start()
    return engine


@pytest.fixture
def test_app(engine: Engine):
    """Create a test FastAPI application around the in-memory engine."""
    return create_app(engine.settings, engine)


@pytest.fixture
async def api_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API.

    Uses httpx with ASGI transport for in-process testing.
    """
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"X-User-ID": "user-1"}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-User-ID": "ops-1", "X-User-Roles": "admin"}


@pytest.fixture
def row_check():
    """Column constraint check for rows built by the SQL store."""
    return check_row
