"""Analysis session expiration state.

Rows are written only by the session lifecycle manager; every field
except the key is overwritten with a random-derived pattern before a
row is deleted.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import DateTime, Enum, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from custodian.db.models.base import (
    Base,
    DataClassification,
    OptionalTimestampTZ,
    SecurityLevel,
)


class TrackedSession(Base):
    """Expiration metadata for one analysis session.

    Invariants maintained by the service layer:
    - expires_at never exceeds created_at plus the security level ceiling
    - extension_count never exceeds max_extensions
    - grace_period_ends_at is only set after expires_at has passed
    """

    __tablename__ = "tracked_sessions"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_accessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    extension_count: Mapped[int] = mapped_column(default=0, nullable=False)
    max_extensions: Mapped[int] = mapped_column(nullable=False)

    # Present only while the session is in its grace window
    grace_period_ends_at: Mapped[OptionalTimestampTZ]

    security_level: Mapped[SecurityLevel] = mapped_column(
        Enum(SecurityLevel, name="security_level", create_constraint=True),
        nullable=False,
    )
    data_classification: Mapped[DataClassification] = mapped_column(
        Enum(DataClassification, name="data_classification", create_constraint=True),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_tracked_sessions_owner_id", "owner_id"),
        Index("ix_tracked_sessions_expires_at", "expires_at"),
    )
