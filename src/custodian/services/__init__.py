"""Custodian service layer.

This package contains the engine components and their storage backends:
- SessionLifecycleManager: Session creation, extension, grace and secure expiry
- QuotaArbiter: Per-user daily admission limit with atomic reservation
- RetentionCatalog: Retention policies and governed record registry
- CleanupScheduler: Batched, cancellable retention cleanup runs
- AuditLogService: Hash-chained audit trail
- MemoryStore / SqlStore: In-process and PostgreSQL storage backends
"""

from custodian.services.audit_log import AuditEventType, AuditLogService
from custodian.services.cleanup import CleanupReport, CleanupScheduler, CleanupVerification
from custodian.services.engine import Engine, build_engine
from custodian.services.memory_store import MemoryStore
from custodian.services.quota import QuotaArbiter, QuotaDecision, QuotaStatus
from custodian.services.retention import RetentionCatalog
from custodian.services.session_lifecycle import SessionLifecycleManager, SessionStatus
from custodian.services.store import EngineStore, StoreError

__all__ = [
    "AuditEventType",
    "AuditLogService",
    "CleanupReport",
    "CleanupScheduler",
    "CleanupVerification",
    "Engine",
    "EngineStore",
    "MemoryStore",
    "QuotaArbiter",
    "QuotaDecision",
    "QuotaStatus",
    "RetentionCatalog",
    "SessionLifecycleManager",
    "SessionStatus",
    "StoreError",
    "build_engine",
]
