"""Hash-chained audit log records."""

from __future__ import annotations

from sqlalchemy import BigInteger, Enum, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from custodian.db.models.base import AuditStream, Base, TimestampTZ, UUIDPrimaryKey


class AuditLogRecord(Base):
    """Tamper-evident audit log entry.

    Each record is chained to the previous record of its stream via
    prev_record_hash. Records only ever carry summaries and hashes, never
    the governed content itself.
    """

    __tablename__ = "audit_log_records"

    record_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    stream: Mapped[AuditStream] = mapped_column(
        Enum(AuditStream, name="audit_stream", create_constraint=True),
        nullable=False,
    )

    # Monotonically increasing within the stream; gaps reveal deletions
    seq_no: Mapped[int] = mapped_column(BigInteger, nullable=False)

    record_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    # NULL only for the first record of a stream
    prev_record_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    payload_ref: Mapped[str] = mapped_column(String(500), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)

    actor_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resource_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    summary: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        Index("ix_audit_log_records_stream_seq", "stream", "seq_no", unique=True),
        Index("ix_audit_log_records_created_at", "created_at"),
        Index("ix_audit_log_records_event_type", "event_type"),
        Index("ix_audit_log_records_resource", "resource_type", "resource_id"),
    )
