"""Quota API router."""

from __future__ import annotations

from fastapi import APIRouter

from custodian.api.dependencies import CallerDep, EngineDep
from custodian.api.middleware.errors import QuotaExceededAPIError, ValidationAPIError
from custodian.api.schemas.quota import (
    QuotaDecisionResponse,
    QuotaStatusResponse,
    ReserveQuotaRequest,
)
from custodian.services.quota import InvalidReservationError, QuotaExceededError

router = APIRouter(prefix="/quota", tags=["quota"])


@router.get("", response_model=QuotaStatusResponse)
async def get_quota_status(caller: CallerDep, engine: EngineDep) -> QuotaStatusResponse:
    """Return the caller's usage in the current period without charging it."""
    quota_status = await engine.quota.status(caller.user_id)
    return QuotaStatusResponse(
        user_id=caller.user_id,
        period_key=quota_status.period_key,
        used=quota_status.used,
        remaining=quota_status.remaining,
        limit=quota_status.limit,
        exceeded=quota_status.exceeded,
        usage_percentage=quota_status.usage_percentage,
        reset_at=quota_status.reset_at,
    )


@router.post("/reserve", response_model=QuotaDecisionResponse)
async def reserve_quota(
    body: ReserveQuotaRequest,
    caller: CallerDep,
    engine: EngineDep,
) -> QuotaDecisionResponse:
    """Reserve admissions for the caller.

    Responds 429 when the reservation does not fit in what is left today;
    nothing is charged in that case.
    """
    try:
        decision = await engine.quota.reserve(caller.user_id, amount=body.amount)
    except InvalidReservationError as e:
        raise ValidationAPIError(str(e), status_code=422) from e
    except QuotaExceededError as e:
        raise QuotaExceededAPIError(str(e), e.used, e.limit, e.reset_at) from e

    return QuotaDecisionResponse(
        user_id=caller.user_id,
        period_key=decision.period_key,
        allowed=decision.allowed,
        used=decision.used,
        remaining=decision.remaining,
        limit=decision.limit,
        reset_at=decision.reset_at,
    )
