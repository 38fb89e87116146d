"""Pydantic schemas for the quota API endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

# Upper bound accepted by the reserve endpoint
MAX_RESERVATION_AMOUNT = 10


class ReserveQuotaRequest(BaseModel):
    """Request body for reserving admissions."""

    amount: int = Field(
        default=1,
        ge=1,
        le=MAX_RESERVATION_AMOUNT,
        description="Admissions to reserve in one step",
    )


class QuotaStatusResponse(BaseModel):
    """Usage of the caller in the current period."""

    user_id: str
    period_key: str
    used: int
    remaining: int
    limit: int
    exceeded: bool
    usage_percentage: float
    reset_at: datetime


class QuotaDecisionResponse(BaseModel):
    """Result of a successful reservation."""

    user_id: str
    period_key: str
    allowed: bool
    used: int
    remaining: int
    limit: int
    reset_at: datetime
