"""Wiring of the engine components from settings.

The API and the worker both build one ``Engine`` at startup; every
component shares the same store, audit log and per-session locks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from custodian.core.clock import utcnow
from custodian.core.config import StoreBackend
from custodian.services.audit_log import AuditLogService
from custodian.services.cleanup import CleanupScheduler
from custodian.services.locks import KeyedLock
from custodian.services.memory_store import MemoryStore
from custodian.services.quota import QuotaArbiter
from custodian.services.retention import RetentionCatalog
from custodian.services.session_lifecycle import SessionLifecycleManager

if TYPE_CHECKING:
    from custodian.core.clock import Clock
    from custodian.core.config import Settings
    from custodian.services.store import EngineStore

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """The engine components built around one store."""

    settings: Settings
    store: EngineStore
    audit: AuditLogService
    sessions: SessionLifecycleManager
    quota: QuotaArbiter
    catalog: RetentionCatalog
    cleanup: CleanupScheduler

    async def start(self) -> None:
        """Prepare the store for use; installs missing default policies."""
        await self.catalog.install_default_policies()

    async def close(self) -> None:
        """Release store resources."""
        await self.store.close()


def create_store(settings: Settings) -> EngineStore:
    """Create the store selected by ``settings.store_backend``."""
    if settings.store_backend == StoreBackend.POSTGRES:
        from custodian.db import get_session_factory
        from custodian.services.sql_store import SqlStore

        return SqlStore(get_session_factory(settings.database))
    return MemoryStore()


def build_engine(
    settings: Settings,
    store: EngineStore | None = None,
    *,
    clock: Clock = utcnow,
) -> Engine:
    """Build every engine component from settings.

    Args:
        settings: Application settings.
        store: Store to use instead of the configured backend (tests).
        clock: Time source shared by all components.

    Returns:
        The wired Engine.
    """
    store = store or create_store(settings)
    audit = AuditLogService(store, clock=clock)
    sessions = SessionLifecycleManager(
        store,
        audit,
        default_hours=settings.session.default_expiration_hours,
        secure_wipe_enabled=settings.session.secure_wipe_enabled,
        clock=clock,
        locks=KeyedLock(),
    )
    quota = QuotaArbiter(
        store,
        daily_limit=settings.quota.daily_limit,
        timezone_offset_minutes=settings.quota.timezone_offset_minutes,
        max_reservation_amount=settings.quota.max_reservation_amount,
        audit=audit,
        clock=clock,
    )
    catalog = RetentionCatalog(store, audit, clock=clock)
    cleanup = CleanupScheduler(
        store,
        catalog,
        sessions,
        audit,
        batch_size=settings.cleanup.batch_size,
        parallel=settings.cleanup.parallel,
        max_concurrent_batches=settings.cleanup.max_concurrent_batches,
        timeout_seconds=settings.cleanup.timeout_seconds,
        clock=clock,
    )

    logger.info(
        "Engine built: store=%s, daily_limit=%d, batch_size=%d",
        type(store).__name__,
        settings.quota.daily_limit,
        settings.cleanup.batch_size,
    )
    return Engine(
        settings=settings,
        store=store,
        audit=audit,
        sessions=sessions,
        quota=quota,
        catalog=catalog,
        cleanup=cleanup,
    )
