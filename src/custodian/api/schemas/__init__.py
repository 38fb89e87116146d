"""Pydantic request and response schemas for the Custodian API."""

from custodian.api.schemas.admin import (
    AbortCleanupRequest,
    AbortCleanupResponse,
    CleanupReportResponse,
    CleanupTaskSummary,
    CleanupVerificationResponse,
    RetentionStatsResponse,
    RunCleanupRequest,
)
from custodian.api.schemas.quota import (
    QuotaDecisionResponse,
    QuotaStatusResponse,
    ReserveQuotaRequest,
)
from custodian.api.schemas.retention import RecordResponse, RegisterRecordRequest
from custodian.api.schemas.sessions import (
    CreateSessionRequest,
    ExpireSessionResponse,
    ExtendSessionRequest,
    ExtendSessionResponse,
    SessionResponse,
    SessionStatusResponse,
)

__all__ = [
    "AbortCleanupRequest",
    "AbortCleanupResponse",
    "CleanupReportResponse",
    "CleanupTaskSummary",
    "CleanupVerificationResponse",
    "CreateSessionRequest",
    "ExpireSessionResponse",
    "ExtendSessionRequest",
    "ExtendSessionResponse",
    "QuotaDecisionResponse",
    "QuotaStatusResponse",
    "RecordResponse",
    "RegisterRecordRequest",
    "ReserveQuotaRequest",
    "RetentionStatsResponse",
    "RunCleanupRequest",
    "SessionResponse",
    "SessionStatusResponse",
]
