"""Pydantic schemas for retention record registration."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from custodian.db.models.base import RecordSensitivity


class RegisterRecordRequest(BaseModel):
    """Request body for registering a governed artifact."""

    data_id: str = Field(..., min_length=1, max_length=128)
    data_type: str = Field(..., min_length=1, max_length=100)
    content_hash: str = Field(
        ..., min_length=64, max_length=64, description="SHA-256 hex digest of the content"
    )
    policy_id: str = Field(..., min_length=1, max_length=100)
    metadata: dict[str, Any] | None = None
    security_level: RecordSensitivity = RecordSensitivity.MEDIUM


class RecordResponse(BaseModel):
    """A registered retention record."""

    model_config = ConfigDict(from_attributes=True)

    data_id: str
    data_type: str
    content_hash: str
    policy_id: str
    registered_at: datetime
    expires_at: datetime
    security_level: RecordSensitivity
    is_archived: bool
