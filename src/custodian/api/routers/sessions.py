"""Session API router.

Handles creation, status, extension and explicit expiry of analysis
sessions. Creation charges the caller's daily quota first; a session is
only created once the admission has been granted. A client-chosen id that
is already taken is refused with 409 and never replaces the existing
session.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from fastapi import APIRouter, status

from custodian.api.dependencies import CallerDep, EngineDep
from custodian.api.middleware.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    QuotaExceededAPIError,
    ValidationAPIError,
)
from custodian.api.schemas.sessions import (
    CreateSessionRequest,
    ExpireSessionResponse,
    ExtendSessionRequest,
    ExtendSessionResponse,
    SessionResponse,
    SessionStatusResponse,
)
from custodian.services.quota import QuotaExceededError
from custodian.services.session_lifecycle import (
    ExpiryReason,
    SessionAccessDeniedError,
    SessionAlreadyExistsError,
    SessionNotFoundError,
    SessionStatus,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _status_response(session_id: str, session_status: SessionStatus) -> SessionStatusResponse:
    return SessionStatusResponse(
        session_id=session_id,
        exists=session_status.exists,
        expired=session_status.expired,
        in_grace=session_status.in_grace,
        time_remaining_seconds=int(session_status.time_remaining / timedelta(seconds=1)),
        can_extend=session_status.can_extend,
        extensions_remaining=session_status.extensions_remaining,
        expires_at=session_status.expires_at,
        warning_time=session_status.warning_time,
    )


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: CreateSessionRequest,
    caller: CallerDep,
    engine: EngineDep,
) -> SessionResponse:
    """Admit and create an analysis session.

    Raises:
        ConflictError: If the requested session id is already taken.
        QuotaExceededAPIError: If the caller has no admissions left today.
    """
    # Refused before the quota is charged; create re-checks atomically
    if body.session_id and await engine.sessions.get(body.session_id) is not None:
        raise ConflictError("Session id is already taken")

    try:
        decision = await engine.quota.reserve(caller.user_id)
    except QuotaExceededError as e:
        raise QuotaExceededAPIError(str(e), e.used, e.limit, e.reset_at) from e

    session_id = body.session_id or uuid.uuid4().hex
    try:
        session = await engine.sessions.create(
            session_id,
            caller.user_id,
            body.security_level,
            body.data_classification,
            body.requested_hours,
        )
    except SessionAlreadyExistsError as e:
        raise ConflictError("Session id is already taken") from e
    except ValueError as e:
        raise ValidationAPIError(str(e)) from e

    return SessionResponse(
        session_id=session.session_id,
        owner_id=session.owner_id,
        created_at=session.created_at,
        expires_at=session.expires_at,
        security_level=session.security_level,
        data_classification=session.data_classification,
        max_extensions=session.max_extensions,
        extension_count=session.extension_count,
        quota_remaining=decision.remaining,
    )


@router.get("/{session_id}/status", response_model=SessionStatusResponse)
async def get_session_status(
    session_id: str,
    caller: CallerDep,
    engine: EngineDep,
) -> SessionStatusResponse:
    """Return the status of a session.

    Unknown sessions are reported as expired rather than as 404, so clients
    can poll a session until it disappears.
    """
    session = await engine.sessions.get(session_id)
    if session is not None and session.owner_id != caller.user_id and not caller.is_admin:
        raise AuthorizationError("Session belongs to another user")

    return _status_response(session_id, await engine.sessions.get_status(session_id))


@router.post("/{session_id}/extend", response_model=ExtendSessionResponse)
async def extend_session(
    session_id: str,
    body: ExtendSessionRequest,
    caller: CallerDep,
    engine: EngineDep,
) -> ExtendSessionResponse:
    """Extend a session owned by the caller.

    Reaching the extension limit is not an error: the response reports
    ``extended=false`` and the session is unchanged.
    """
    try:
        extended = await engine.sessions.extend(
            session_id,
            caller.user_id,
            body.reason,
            body.additional_hours,
        )
    except SessionNotFoundError as e:
        raise NotFoundError("Session", session_id) from e
    except SessionAccessDeniedError as e:
        raise AuthorizationError(str(e)) from e

    return ExtendSessionResponse(
        extended=extended,
        status=_status_response(session_id, await engine.sessions.get_status(session_id)),
    )


@router.post("/{session_id}/expire", response_model=ExpireSessionResponse)
async def expire_session(
    session_id: str,
    caller: CallerDep,
    engine: EngineDep,
) -> ExpireSessionResponse:
    """Securely wipe and remove a session now; repeated calls report expired=false."""
    session = await engine.sessions.get(session_id)
    if session is not None and session.owner_id != caller.user_id and not caller.is_admin:
        raise AuthorizationError("Session belongs to another user")

    reason = (
        ExpiryReason.USER_REQUESTED
        if session is None or session.owner_id == caller.user_id
        else ExpiryReason.ADMIN_REQUESTED
    )
    expired = await engine.sessions.expire_now(session_id, reason)
    if expired:
        logger.info(
            "Session expired via API: session_id=%s, caller=%s, reason=%s",
            session_id,
            caller.user_id,
            reason.value,
        )
    return ExpireSessionResponse(session_id=session_id, expired=expired)
