"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Reusable column type annotations
- Enum types shared by the ORM models and the engine services
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

# Opaque identifiers supplied by callers (session ids, data ids, user ids)
IdentifierString = Annotated[str, mapped_column(String(128))]
ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]


class Base(DeclarativeBase):
    """Declarative base for all Custodian models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class SecurityLevel(enum.Enum):
    """Session policy tier controlling expiration and extension limits.

    Bounds tighten from STANDARD to MAXIMUM for every limit.

    Values:
        STANDARD: Up to 7 days, 3 extensions, 30 minute grace period
        ENHANCED: Up to 3 days, 2 extensions, 15 minute grace period
        MAXIMUM: Up to 1 day, 1 extension, 5 minute grace period
    """

    STANDARD = "standard"
    ENHANCED = "enhanced"
    MAXIMUM = "maximum"


class DataClassification(enum.Enum):
    """Sensitivity tier of the governed content.

    Values:
        PUBLIC: No additional expiration ceiling
        INTERNAL: No additional expiration ceiling
        CONFIDENTIAL: Sessions end within 48 hours
        RESTRICTED: Sessions end within 12 hours
    """

    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"


class RecordSensitivity(enum.Enum):
    """Sensitivity of a retained record.

    Values:
        LOW: Aggregates or derived data
        MEDIUM: Default for analysis output
        HIGH: Personal data
        CRITICAL: Raw submitted content
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CleanupTaskStatus(enum.Enum):
    """Status of a retention cleanup task.

    Values:
        SCHEDULED: Created, waiting to run
        RUNNING: Currently processing batches
        COMPLETED: All batches processed (per-record errors may exist)
        ABORTED: Stopped by an explicit abort request
        TIMED_OUT: Stopped because the wall-clock budget ran out
        FAILED: Candidate discovery failed before any record was touched
    """

    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class AuditStream(enum.Enum):
    """Audit log stream categories.

    Values:
        SESSION: Session creation, extension, expiry and wipe events
        QUOTA: Admission decisions
        RETENTION: Record registration, archive, purge and cleanup events
        OPS: Operational events (scheduler passes, maintenance)
    """

    SESSION = "session"
    QUOTA = "quota"
    RETENTION = "retention"
    OPS = "ops"
