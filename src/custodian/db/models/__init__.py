"""SQLAlchemy ORM models for Custodian.

This package contains all database models organized by domain:
- base: Common metadata, type definitions and enums
- session: Analysis session expiration state
- quota: Per-user daily quota counters
- retention: Retention policies, records, child records and cleanup tasks
- audit: Hash-chained audit log records
"""

from custodian.db.models.audit import AuditLogRecord
from custodian.db.models.base import Base, metadata
from custodian.db.models.quota import DailyQuota
from custodian.db.models.retention import (
    CleanupTaskEntry,
    RetentionEntry,
    RetentionPolicyEntry,
    RiskAssessment,
)
from custodian.db.models.session import TrackedSession

__all__ = [
    "AuditLogRecord",
    "Base",
    "CleanupTaskEntry",
    "DailyQuota",
    "RetentionEntry",
    "RetentionPolicyEntry",
    "RiskAssessment",
    "TrackedSession",
    "metadata",
]
