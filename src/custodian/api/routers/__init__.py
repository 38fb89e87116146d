"""Custodian API routers.

Each router handles one JSON namespace under /api:
- sessions: Session admission, status, extension and expiry
- quota: Daily quota status and reservation
- retention: Governed record registration
- admin: Cleanup runs, verification and retention statistics (admin role)
"""

from custodian.api.routers.admin import router as admin_router
from custodian.api.routers.quota import router as quota_router
from custodian.api.routers.retention import router as retention_router
from custodian.api.routers.sessions import router as sessions_router

__all__ = [
    "admin_router",
    "quota_router",
    "retention_router",
    "sessions_router",
]
