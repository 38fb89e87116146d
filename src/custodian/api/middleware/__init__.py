"""Custodian API middleware components.

This module provides middleware for:
- Request ID tracking for log correlation
- Consistent error response formatting
"""

from custodian.api.middleware.errors import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    ErrorHandlerMiddleware,
    NotFoundError,
    QuotaExceededAPIError,
    ValidationAPIError,
)
from custodian.api.middleware.request_id import RequestIDMiddleware, get_request_id

__all__ = [
    "APIError",
    "AuthenticationError",
    "AuthorizationError",
    "ConflictError",
    "ErrorHandlerMiddleware",
    "NotFoundError",
    "QuotaExceededAPIError",
    "RequestIDMiddleware",
    "ValidationAPIError",
    "get_request_id",
]
