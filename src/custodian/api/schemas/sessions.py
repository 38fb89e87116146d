"""Pydantic schemas for the session API endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from custodian.db.models.base import DataClassification, SecurityLevel


class CreateSessionRequest(BaseModel):
    """Request body for creating an analysis session.

    Admission is charged against the caller's daily quota first.
    """

    session_id: str | None = Field(
        default=None,
        min_length=1,
        max_length=128,
        description="Client-chosen session id; generated when omitted",
    )
    security_level: SecurityLevel = Field(
        default=SecurityLevel.STANDARD, description="Policy tier of the session"
    )
    data_classification: DataClassification = Field(
        default=DataClassification.INTERNAL, description="Sensitivity of the analysed data"
    )
    requested_hours: float | None = Field(
        default=None, gt=0, description="Desired lifetime; capped by level and classification"
    )


class SessionResponse(BaseModel):
    """Session metadata returned after creation."""

    model_config = ConfigDict(from_attributes=True)

    session_id: str
    owner_id: str
    created_at: datetime
    expires_at: datetime
    security_level: SecurityLevel
    data_classification: DataClassification
    max_extensions: int
    extension_count: int
    quota_remaining: int | None = Field(
        default=None, description="Admissions left today after this one"
    )


class SessionStatusResponse(BaseModel):
    """Status of a session; unknown sessions report exists=false, expired=true."""

    session_id: str
    exists: bool
    expired: bool
    in_grace: bool
    time_remaining_seconds: int
    can_extend: bool
    extensions_remaining: int
    expires_at: datetime | None = None
    warning_time: datetime | None = None


class ExtendSessionRequest(BaseModel):
    """Request body for extending a session."""

    reason: str = Field(..., min_length=1, max_length=500, description="Why more time is needed")
    additional_hours: float | None = Field(
        default=None, gt=0, description="Requested extension; defaults to the standard length"
    )


class ExtendSessionResponse(BaseModel):
    """Outcome of an extension request."""

    extended: bool
    status: SessionStatusResponse


class ExpireSessionResponse(BaseModel):
    """Outcome of an explicit expiry request."""

    session_id: str
    expired: bool
