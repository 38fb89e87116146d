"""Retention API router.

Other services register the artifacts they produce here so the
retention cleanup can find them once their policy period has passed.
"""

from __future__ import annotations

from fastapi import APIRouter, status

from custodian.api.dependencies import CallerDep, EngineDep
from custodian.api.middleware.errors import NotFoundError, ValidationAPIError
from custodian.api.schemas.retention import RecordResponse, RegisterRecordRequest
from custodian.services.retention import PolicyNotFoundError

router = APIRouter(prefix="/retention", tags=["retention"])


@router.post("/records", response_model=RecordResponse, status_code=status.HTTP_201_CREATED)
async def register_record(
    body: RegisterRecordRequest,
    caller: CallerDep,
    engine: EngineDep,
) -> RecordResponse:
    """Register a governed artifact under a retention policy."""
    metadata = {**(body.metadata or {}), "registered_by": caller.user_id}
    try:
        record = await engine.catalog.register(
            body.data_id,
            body.data_type,
            body.content_hash,
            body.policy_id,
            metadata=metadata,
            security_level=body.security_level,
        )
    except PolicyNotFoundError as e:
        raise NotFoundError("Retention policy", body.policy_id) from e
    except ValueError as e:
        raise ValidationAPIError(str(e)) from e

    return RecordResponse.model_validate(record)
