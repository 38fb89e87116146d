"""Tamper-evident audit logging service.

Every state transition of the engine (session creation, extension,
expiry and wipe, quota decisions, record archive and purge, cleanup runs)
is appended here. Each record is linked to the previous record of its
stream via SHA-256, enabling detection of:
- Record deletion
- Record modification
- Record reordering
- Sequence number gaps

Records carry summaries and hashes only; governed content never reaches
the audit trail.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from custodian.core.clock import utcnow
from custodian.db.models.base import AuditStream  # noqa: TC001 - used at runtime

if TYPE_CHECKING:
    from custodian.core.clock import Clock
    from custodian.services.store import EngineStore


class AuditEventType(Enum):
    """Audit event types for categorization and filtering."""

    # Session stream events
    SESSION_CREATED = "session_created"
    SESSION_ID_CONFLICT = "session_id_conflict"
    SESSION_EXTENDED = "session_extended"
    EXTENSION_DENIED = "extension_denied"
    EXTENSION_LIMIT_EXCEEDED = "extension_limit_exceeded"
    GRACE_PERIOD_STARTED = "grace_period_started"
    SESSION_EXPIRED = "session_expired"
    SECURE_WIPE_PERFORMED = "secure_wipe_performed"

    # Quota stream events
    QUOTA_RESERVED = "quota_reserved"
    QUOTA_EXCEEDED = "quota_exceeded"

    # Retention stream events
    POLICY_CHANGED = "policy_changed"
    RECORD_REGISTERED = "record_registered"
    RECORD_ARCHIVED = "record_archived"
    RECORD_PURGED = "record_purged"
    CLEANUP_COMPLETED = "cleanup_completed"
    CLEANUP_VERIFIED = "cleanup_verified"

    # Operations stream events
    MAINTENANCE_COMPLETED = "maintenance_completed"


@dataclass(frozen=True, slots=True)
class AuditLogEntry:
    """Immutable representation of an audit log record.

    Attributes:
        record_id: Unique identifier for this record.
        stream: The audit stream.
        seq_no: Monotonically increasing sequence number within stream.
        record_hash: SHA-256 hash of this record's canonical content.
        prev_record_hash: Hash of previous record (None for first record).
        event_type: Category of event for filtering.
        actor_type: Type of actor (user, system, admin).
        actor_id: Identifier of the actor.
        resource_type: Type of resource affected (session, record, quota).
        resource_id: Identifier of the affected resource.
        payload_ref: Content-addressed reference to the event payload.
        summary: Brief summary metadata for display.
        created_at: When this record was created.
    """

    record_id: uuid.UUID
    stream: AuditStream
    seq_no: int
    record_hash: str
    prev_record_hash: str | None
    event_type: str
    actor_type: str | None
    actor_id: str | None
    resource_type: str | None
    resource_id: str | None
    payload_ref: str
    summary: dict[str, Any] | None
    created_at: datetime


@dataclass(frozen=True, slots=True)
class ChainVerificationResult:
    """Result of verifying an audit log chain.

    Attributes:
        valid: True if the chain is intact and tamper-free.
        checked_records: Number of records verified.
        first_seq_no: First sequence number in the verified range.
        last_seq_no: Last sequence number in the verified range.
        errors: List of detected integrity violations.
    """

    valid: bool
    checked_records: int
    first_seq_no: int | None
    last_seq_no: int | None
    errors: list[str]


class AuditLogService:
    """Service for tamper-evident audit logging.

    Sequence allocation and the link to the previous record happen inside
    the store's append primitive, so concurrent writers to one stream
    cannot fork the chain.

    Example:
        audit = AuditLogService(store)
        await audit.append(
            stream=AuditStream.SESSION,
            event_type=AuditEventType.SESSION_CREATED,
            actor_type="user",
            actor_id="user-123",
            resource_type="session",
            resource_id="a1b2c3",
            payload={"security_level": "standard"},
        )

        result = await audit.verify_chain(AuditStream.SESSION)
    """

    def __init__(self, store: EngineStore, *, clock: Clock = utcnow) -> None:
        """Initialize the audit log service.

        Args:
            store: Backing store holding the audit records.
            clock: Time source for record timestamps.
        """
        self._store = store
        self._clock = clock

    async def append(
        self,
        *,
        stream: AuditStream,
        event_type: AuditEventType | str,
        payload: dict[str, Any],
        actor_type: str | None = None,
        actor_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        summary: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """Append a new record to the audit log.

        Args:
            stream: The audit stream to append to.
            event_type: Type of event being logged.
            payload: Event payload; only its digest is kept in the record.
            actor_type: Type of actor performing the action.
            actor_id: Identifier of the actor.
            resource_type: Type of resource affected.
            resource_id: Identifier of the affected resource.
            summary: Brief summary for display.

        Returns:
            The created audit log entry.
        """
        event_type_str = event_type.value if isinstance(event_type, AuditEventType) else event_type
        record_id = uuid.uuid4()
        created_at = self._clock()
        payload_ref = _payload_ref(record_id, payload)

        def build(seq_no: int, prev_hash: str | None) -> AuditLogEntry:
            return AuditLogEntry(
                record_id=record_id,
                stream=stream,
                seq_no=seq_no,
                record_hash=compute_record_hash(
                    stream=stream.value,
                    seq_no=seq_no,
                    event_type=event_type_str,
                    payload_ref=payload_ref,
                    prev_record_hash=prev_hash,
                    created_at=created_at,
                ),
                prev_record_hash=prev_hash,
                event_type=event_type_str,
                actor_type=actor_type,
                actor_id=actor_id,
                resource_type=resource_type,
                resource_id=resource_id,
                payload_ref=payload_ref,
                summary=summary,
                created_at=created_at,
            )

        return await self._store.append_audit(stream, build)

    async def verify_chain(
        self,
        stream: AuditStream,
        *,
        start_seq: int | None = None,
        end_seq: int | None = None,
    ) -> ChainVerificationResult:
        """Verify the integrity of an audit log chain.

        Checks that:
        1. Sequence numbers are contiguous (no gaps)
        2. Each record's hash matches its computed hash
        3. Each record's prev_record_hash matches the previous record's hash
        4. The first record has prev_record_hash=None

        Args:
            stream: The audit stream to verify.
            start_seq: Starting sequence number (inclusive). Defaults to 1.
            end_seq: Ending sequence number (inclusive). Defaults to latest.

        Returns:
            ChainVerificationResult with validity status and any errors found.
        """
        records = await self._store.list_audit(stream, start_seq=start_seq, end_seq=end_seq)

        if not records:
            return ChainVerificationResult(
                valid=True,
                checked_records=0,
                first_seq_no=None,
                last_seq_no=None,
                errors=[],
            )

        errors: list[str] = []
        prev_hash: str | None = None
        expected_seq: int | None = None

        for record in records:
            if expected_seq is not None and record.seq_no != expected_seq:
                errors.append(
                    f"Sequence gap detected: expected {expected_seq}, found {record.seq_no}"
                )

            if record.seq_no == 1 and record.prev_record_hash is not None:
                errors.append(
                    f"First record (seq_no=1) has prev_record_hash={record.prev_record_hash}, "
                    "expected None"
                )

            if prev_hash is not None and record.prev_record_hash != prev_hash:
                errors.append(
                    f"Chain break at seq_no={record.seq_no}: "
                    f"prev_record_hash={record.prev_record_hash}, expected {prev_hash}"
                )

            computed_hash = compute_record_hash(
                stream=record.stream.value,
                seq_no=record.seq_no,
                event_type=record.event_type,
                payload_ref=record.payload_ref,
                prev_record_hash=record.prev_record_hash,
                created_at=record.created_at,
            )
            if record.record_hash != computed_hash:
                errors.append(
                    f"Hash mismatch at seq_no={record.seq_no}: "
                    f"stored={record.record_hash}, computed={computed_hash}"
                )

            prev_hash = record.record_hash
            expected_seq = record.seq_no + 1

        return ChainVerificationResult(
            valid=not errors,
            checked_records=len(records),
            first_seq_no=records[0].seq_no,
            last_seq_no=records[-1].seq_no,
            errors=errors,
        )

    async def get_records(
        self,
        stream: AuditStream,
        *,
        event_type: AuditEventType | str | None = None,
        actor_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[AuditLogEntry]:
        """Query audit log records with filtering, oldest first.

        Args:
            stream: The audit stream to query.
            event_type: Filter by event type.
            actor_id: Filter by actor identifier.
            resource_type: Filter by resource type.
            resource_id: Filter by resource identifier.
            limit: Maximum number of records to return (None for all).
            offset: Number of records to skip.

        Returns:
            List of matching audit log entries.
        """
        if isinstance(event_type, AuditEventType):
            event_type = event_type.value
        return await self._store.list_audit(
            stream,
            event_type=event_type,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            limit=limit,
            offset=offset,
        )


def compute_record_hash(
    *,
    stream: str,
    seq_no: int,
    event_type: str,
    payload_ref: str,
    prev_record_hash: str | None,
    created_at: datetime,
) -> str:
    """Compute the SHA-256 hash of a record's canonical representation.

    The canonical representation is a JSON object with deterministically
    ordered keys and no whitespace.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = {
        "created_at": created_at.isoformat(),
        "event_type": event_type,
        "payload_ref": payload_ref,
        "prev_record_hash": prev_record_hash,
        "seq_no": seq_no,
        "stream": stream,
    }
    canonical_json = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def _payload_ref(record_id: uuid.UUID, payload: dict[str, Any]) -> str:
    payload_json = json.dumps(payload, sort_keys=True, default=str)
    return f"inline:{record_id}:{hashlib.sha256(payload_json.encode()).hexdigest()[:16]}"
