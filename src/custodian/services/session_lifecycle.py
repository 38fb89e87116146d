"""Analysis session lifecycle: creation, extension, grace period and expiry.

State machine:
    Active --(extend, up to max_extensions)--> Active
    Active --(nominal expiry passes)--> Expired-Pending-Grace
    Expired-Pending-Grace --(start_grace)--> Grace-Active
    any --(expire_now / cleanup sweep)--> Purged (secure wipe, then delete)

Every read-decide-write on one session goes through a store primitive
that holds the session exclusively, so concurrent extend and expire calls
on the same session are linearizable even across processes sharing the
store. A per-session lock additionally orders calls within one process.
Authorization failures and taken ids raise; every other "unknown" or
"already done" condition is a False-returning no-op so cleanup and expiry
can be retried safely.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from custodian.core.clock import utcnow
from custodian.db.models.base import AuditStream, DataClassification, SecurityLevel
from custodian.services import expiration_policy
from custodian.services.audit_log import AuditEventType
from custodian.services.locks import KeyedLock
from custodian.services.secure_wipe import secure_wipe
from custodian.services.types import SessionMetadata

if TYPE_CHECKING:
    from custodian.core.clock import Clock
    from custodian.services.audit_log import AuditLogEntry, AuditLogService
    from custodian.services.secure_wipe import WipeResult
    from custodian.services.store import EngineStore

logger = logging.getLogger(__name__)

DEFAULT_EXPIRATION_HOURS = 24

# Actions kept per session when listing its history
SESSION_ACTION_HISTORY = 50


class SessionError(Exception):
    """Base exception for session lifecycle errors."""

    pass


class SessionNotFoundError(SessionError):
    """Raised when an operation that needs an existing session gets an unknown id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionAccessDeniedError(SessionError):
    """Raised when a caller acts on a session owned by someone else."""

    def __init__(self, session_id: str, owner_id: str) -> None:
        self.session_id = session_id
        self.owner_id = owner_id
        super().__init__(f"User {owner_id} does not own session {session_id}")


class SessionAlreadyExistsError(SessionError):
    """Raised when creating a session under an id that is already taken."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session already exists: {session_id}")


class ExpiryReason(str, Enum):
    """Why a session left the active state."""

    USER_REQUESTED = "USER_REQUESTED"
    CLEANUP_SCHEDULED = "CLEANUP_SCHEDULED"
    RETENTION_EXPIRED = "RETENTION_EXPIRED"
    SECURITY_POLICY = "SECURITY_POLICY"
    ADMIN_REQUESTED = "ADMIN_REQUESTED"


@dataclass(frozen=True)
class SessionStatus:
    """Point-in-time view of a session for display and admission checks.

    Attributes:
        exists: Whether the session is known.
        expired: True for unknown sessions or past their effective expiry.
        in_grace: Whether the grace window is running.
        time_remaining: Time left until effective expiry, never negative.
        can_extend: Whether another extension would be granted.
        warning_time: When clients should start warning (expiry minus 15 minutes).
        expires_at: Nominal expiry.
        extensions_remaining: Extensions still available.
    """

    exists: bool
    expired: bool
    in_grace: bool
    time_remaining: timedelta
    can_extend: bool
    warning_time: datetime | None = None
    expires_at: datetime | None = None
    extensions_remaining: int = 0


@dataclass(frozen=True)
class SessionStatistics:
    """Aggregate counts over all tracked sessions."""

    total: int
    active: int
    in_grace: int
    expired: int
    average_extensions: float
    by_security_level: dict[str, int]


class SessionLifecycleManager:
    """Sole owner of session expiration state and its transitions.

    Example:
        manager = SessionLifecycleManager(store, audit)
        session = await manager.create(
            "a1b2c3", "user-1", SecurityLevel.STANDARD, DataClassification.INTERNAL
        )
        await manager.extend("a1b2c3", "user-1", reason="still reviewing")
    """

    def __init__(
        self,
        store: EngineStore,
        audit: AuditLogService,
        *,
        default_hours: float = DEFAULT_EXPIRATION_HOURS,
        secure_wipe_enabled: bool = True,
        clock: Clock = utcnow,
        locks: KeyedLock | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Backing store for session metadata.
            audit: Audit trail for lifecycle actions.
            default_hours: Lifetime and extension length when the caller gives none.
            secure_wipe_enabled: Overwrite fields before deleting a session.
            clock: Time source.
            locks: Per-session critical sections (shared with other components if given).
        """
        self._store = store
        self._audit = audit
        self._default_hours = default_hours
        self._secure_wipe_enabled = secure_wipe_enabled
        self._clock = clock
        self._locks = locks or KeyedLock()

    async def create(
        self,
        session_id: str,
        owner_id: str,
        security_level: SecurityLevel,
        classification: DataClassification,
        requested_hours: float | None = None,
    ) -> SessionMetadata:
        """Create a session under a free id.

        An existing session is never replaced. The attempt is audited and
        refused, so one caller cannot reset or take over another's session.

        Args:
            session_id: Opaque unique identifier.
            owner_id: User creating the session.
            security_level: Policy tier of the session.
            classification: Sensitivity of the analysed data.
            requested_hours: Desired lifetime, capped by level and classification.

        Returns:
            The stored session metadata.

        Raises:
            SessionAlreadyExistsError: If ``session_id`` is already taken.
            ValueError: If ``requested_hours`` is not positive.
        """
        now = self._clock()
        hours = requested_hours if requested_hours is not None else self._default_hours
        expires_at = expiration_policy.compute_expiration(
            security_level, classification, hours, created_at=now
        )
        session = SessionMetadata(
            session_id=session_id,
            owner_id=owner_id,
            created_at=now,
            expires_at=expires_at,
            last_accessed_at=now,
            security_level=security_level,
            data_classification=classification,
            max_extensions=expiration_policy.max_extensions(security_level),
        )

        async with self._locks.hold(session_id):
            created = await self._store.create_session(session)

        if not created:
            existing = await self._store.get_session(session_id)
            await self._record(
                AuditEventType.SESSION_ID_CONFLICT,
                session_id,
                actor_id=owner_id,
                same_owner=existing is not None and existing.owner_id == owner_id,
            )
            logger.warning(
                "Session create refused, id taken: session_id=%s, caller=%s",
                session_id,
                owner_id,
            )
            raise SessionAlreadyExistsError(session_id)

        await self._record(
            AuditEventType.SESSION_CREATED,
            session_id,
            actor_id=owner_id,
            security_level=security_level.value,
            data_classification=classification.value,
            expires_at=expires_at.isoformat(),
        )
        logger.info(
            "Session created: session_id=%s, level=%s, classification=%s, expires_at=%s",
            session_id,
            security_level.value,
            classification.value,
            expires_at.isoformat(),
        )
        return session

    async def get(self, session_id: str) -> SessionMetadata | None:
        """Return the session metadata, or None if unknown."""
        return await self._store.get_session(session_id)

    async def is_expired(self, session_id: str) -> bool:
        """Return True if the session is unknown or past its effective expiry."""
        session = await self._store.get_session(session_id)
        if session is None:
            return True
        return self._clock() > session.effective_expiry

    async def is_in_grace(self, session_id: str) -> bool:
        """Return True while the session's grace window is running."""
        session = await self._store.get_session(session_id)
        if session is None or session.grace_period_ends_at is None:
            return False
        return self._clock() <= session.grace_period_ends_at

    async def extend(
        self,
        session_id: str,
        owner_id: str,
        reason: str,
        additional_hours: float | None = None,
    ) -> bool:
        """Push the session expiry forward.

        The new expiry is ``now + additional_hours`` (or the default extension),
        never beyond the security level ceiling measured from creation. Any
        running grace window is cleared.

        Args:
            session_id: Session to extend.
            owner_id: Caller identity; must match the session owner.
            reason: Free-text justification recorded in the audit trail.
            additional_hours: Requested extension length.

        Returns:
            True if extended, False if the extension limit was already reached.

        Raises:
            SessionNotFoundError: If the session is unknown.
            SessionAccessDeniedError: If ``owner_id`` does not own the session.
            ValueError: If ``additional_hours`` is not positive.
        """
        if additional_hours is not None and additional_hours <= 0:
            msg = f"additional_hours must be positive, got {additional_hours}"
            raise ValueError(msg)

        def apply(session: SessionMetadata) -> SessionMetadata | None:
            # Owner and limit are checked against the state held exclusively
            if session.owner_id != owner_id:
                return None
            if session.extension_count >= session.max_extensions:
                return None
            now = self._clock()
            hours = (
                additional_hours
                if additional_hours is not None
                else expiration_policy.default_extension_hours(
                    session.security_level, self._default_hours
                )
            )
            ceiling = expiration_policy.compute_max_allowed_expiration(
                session.created_at, session.security_level
            )
            session.expires_at = min(now + timedelta(hours=hours), ceiling)
            session.extension_count += 1
            session.grace_period_ends_at = None
            session.last_accessed_at = now
            return session

        async with self._locks.hold(session_id):
            before, session = await self._store.update_session(session_id, apply)

        if before is None:
            raise SessionNotFoundError(session_id)

        if before.owner_id != owner_id:
            await self._record(
                AuditEventType.EXTENSION_DENIED,
                session_id,
                actor_id=owner_id,
                reason=reason,
            )
            logger.warning(
                "Extension denied, owner mismatch: session_id=%s, caller=%s",
                session_id,
                owner_id,
            )
            raise SessionAccessDeniedError(session_id, owner_id)

        if session is None:
            await self._record(
                AuditEventType.EXTENSION_LIMIT_EXCEEDED,
                session_id,
                actor_id=owner_id,
                extension_count=before.extension_count,
                max_extensions=before.max_extensions,
            )
            logger.info(
                "Extension limit reached: session_id=%s, count=%d",
                session_id,
                before.extension_count,
            )
            return False

        await self._record(
            AuditEventType.SESSION_EXTENDED,
            session_id,
            actor_id=owner_id,
            reason_code=ExpiryReason.USER_REQUESTED.value,
            reason=reason,
            extension_count=session.extension_count,
            expires_at=session.expires_at.isoformat(),
        )
        logger.info(
            "Session extended: session_id=%s, count=%d/%d, expires_at=%s",
            session_id,
            session.extension_count,
            session.max_extensions,
            session.expires_at.isoformat(),
        )
        return True

    async def start_grace(self, session_id: str) -> bool:
        """Open the grace window of a session whose nominal expiry has passed.

        Returns:
            False if the session is unknown, already in grace, or not yet expired.
        """
        def open_grace(session: SessionMetadata) -> SessionMetadata | None:
            now = self._clock()
            if session.grace_period_ends_at is not None or now <= session.expires_at:
                return None
            grace = expiration_policy.grace_period_duration(session.security_level)
            session.grace_period_ends_at = now + grace
            return session

        async with self._locks.hold(session_id):
            _, session = await self._store.update_session(session_id, open_grace)
        if session is None:
            return False

        await self._record(
            AuditEventType.GRACE_PERIOD_STARTED,
            session_id,
            grace_period_ends_at=session.grace_period_ends_at.isoformat(),
        )
        logger.info(
            "Grace period started: session_id=%s, ends_at=%s",
            session_id,
            session.grace_period_ends_at.isoformat(),
        )
        return True

    async def expire_now(
        self,
        session_id: str,
        reason: ExpiryReason = ExpiryReason.USER_REQUESTED,
    ) -> bool:
        """Securely wipe and remove a session.

        Idempotent: a second call for the same session returns False.
        """
        async with self._locks.hold(session_id):
            return await self._expire_locked(session_id, reason, only_if_due=False)

    async def touch(self, session_id: str) -> bool:
        """Record activity on a session without changing its expiry."""
        def mark_accessed(session: SessionMetadata) -> SessionMetadata:
            session.last_accessed_at = self._clock()
            return session

        async with self._locks.hold(session_id):
            _, session = await self._store.update_session(session_id, mark_accessed)
        return session is not None

    async def cleanup_expired(self) -> int:
        """Expire every session past its effective expiry.

        Each session is re-checked inside its critical section, so one that
        was extended while the sweep was running is left alone.

        Returns:
            Number of sessions actually removed.
        """
        now = self._clock()
        removed = 0
        for session in await self._store.list_sessions():
            if now <= session.effective_expiry:
                continue
            async with self._locks.hold(session.session_id):
                if await self._expire_locked(
                    session.session_id, ExpiryReason.CLEANUP_SCHEDULED, only_if_due=True
                ):
                    removed += 1

        if removed:
            logger.info("Expired session sweep removed %d sessions", removed)
        return removed

    async def get_status(self, session_id: str) -> SessionStatus:
        """Return the status of a session; unknown sessions report expired."""
        session = await self._store.get_session(session_id)
        if session is None:
            return SessionStatus(
                exists=False,
                expired=True,
                in_grace=False,
                time_remaining=timedelta(0),
                can_extend=False,
            )

        now = self._clock()
        effective = session.effective_expiry
        expired = now > effective
        remaining_extensions = max(0, session.max_extensions - session.extension_count)
        return SessionStatus(
            exists=True,
            expired=expired,
            in_grace=session.grace_period_ends_at is not None and not expired,
            time_remaining=max(effective - now, timedelta(0)),
            can_extend=remaining_extensions > 0,
            warning_time=session.expires_at - expiration_policy.WARNING_LEAD,
            expires_at=session.expires_at,
            extensions_remaining=remaining_extensions,
        )

    async def get_user_sessions(self, owner_id: str) -> list[SessionMetadata]:
        """List the sessions owned by a user, oldest first."""
        sessions = await self._store.list_sessions(owner_id=owner_id)
        return sorted(sessions, key=lambda s: s.created_at)

    async def expire_user_sessions(
        self,
        owner_id: str,
        reason: ExpiryReason = ExpiryReason.USER_REQUESTED,
    ) -> int:
        """Expire every session of a user, returning how many were removed."""
        removed = 0
        for session in await self._store.list_sessions(owner_id=owner_id):
            if await self.expire_now(session.session_id, reason):
                removed += 1
        return removed

    async def statistics(self) -> SessionStatistics:
        """Summarize all tracked sessions."""
        sessions = await self._store.list_sessions()
        now = self._clock()
        expired = sum(1 for s in sessions if now > s.effective_expiry)
        in_grace = sum(
            1 for s in sessions if s.grace_period_ends_at is not None and now <= s.effective_expiry
        )
        extensions = sum(s.extension_count for s in sessions)
        return SessionStatistics(
            total=len(sessions),
            active=len(sessions) - expired - in_grace,
            in_grace=in_grace,
            expired=expired,
            average_extensions=extensions / len(sessions) if sessions else 0.0,
            by_security_level=dict(Counter(s.security_level.value for s in sessions)),
        )

    async def get_actions(
        self,
        session_id: str,
        limit: int = SESSION_ACTION_HISTORY,
    ) -> list[AuditLogEntry]:
        """Return the most recent audit actions recorded for a session."""
        records = await self._audit.get_records(
            AuditStream.SESSION,
            resource_type="session",
            resource_id=session_id,
            limit=None,
        )
        return records[-limit:]

    async def _expire_locked(
        self,
        session_id: str,
        reason: ExpiryReason,
        *,
        only_if_due: bool,
    ) -> bool:
        # Caller holds the session lock
        wipes: list[WipeResult] = []

        def prepare(session: SessionMetadata) -> SessionMetadata | None:
            if only_if_due and self._clock() <= session.effective_expiry:
                return None
            if self._secure_wipe_enabled:
                wipes.append(secure_wipe(session, keep=("session_id",)))
            return session

        session = await self._store.purge_session(session_id, prepare)
        if session is None:
            return False

        # Audited only once the overwrite and delete are committed
        await self._record(
            AuditEventType.SESSION_EXPIRED,
            session_id,
            reason_code=reason.value,
            extension_count=session.extension_count,
        )
        if wipes:
            result = wipes[-1]
            await self._record(
                AuditEventType.SECURE_WIPE_PERFORMED,
                session_id,
                pattern_hash=result.pattern_hash,
                fields_wiped=list(result.fields_wiped),
            )

        logger.info("Session expired: session_id=%s, reason=%s", session_id, reason.value)
        return True

    async def _record(
        self,
        event_type: AuditEventType,
        session_id: str,
        *,
        actor_id: str | None = None,
        **details: Any,
    ) -> None:
        await self._audit.append(
            stream=AuditStream.SESSION,
            event_type=event_type,
            payload={"session_id": session_id, **details},
            actor_type="user" if actor_id else "system",
            actor_id=actor_id,
            resource_type="session",
            resource_id=session_id,
            summary=details or None,
        )
