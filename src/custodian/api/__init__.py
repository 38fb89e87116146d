"""Custodian API service.

FastAPI application providing:
- Session admission, status, extension and expiry
- Daily quota status and reservation
- Retention record registration
- Admin endpoints for cleanup runs and their verification

This module provides the app factory pattern for creating configured
FastAPI instances suitable for testing and production deployment.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from custodian.api.middleware import ErrorHandlerMiddleware, RequestIDMiddleware
from custodian.api.routers import (
    admin_router,
    quota_router,
    retention_router,
    sessions_router,
)
from custodian.core.config import StoreBackend

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from custodian.core.config import Settings
    from custodian.services.engine import Engine

logger = logging.getLogger(__name__)

API_TITLE = "Custodian API"
API_DESCRIPTION = """
Session lifecycle, quota and retention engine.

## Namespaces

- **/api/sessions/** - Analysis session admission and lifecycle
- **/api/quota/** - Daily analysis quota
- **/api/retention/** - Governed record registration
- **/api/admin/** - Cleanup operations (admin role)

Callers are identified by the X-User-ID header; admin endpoints also
require `admin` in X-User-Roles.
"""


def create_app(settings: Settings | None = None, engine: Engine | None = None) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Args:
        settings: Settings to use; loaded from the environment if omitted.
        engine: Prebuilt engine (tests); built from settings if omitted.

    Returns:
        Configured FastAPI application ready to serve requests.

    Example:
        app = create_app()

        # For testing
        engine = build_engine(Settings(), store=MemoryStore())
        app = create_app(engine.settings, engine)
    """
    if settings is None:
        if engine is not None:
            settings = engine.settings
        else:
            from custodian.core.settings import get_settings

            settings = get_settings()

    if engine is None:
        from custodian.services.engine import build_engine

        engine = build_engine(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await engine.start()
        try:
            yield
        finally:
            await engine.close()
            if settings.store_backend == StoreBackend.POSTGRES:
                from custodian.db import close_engine

                await close_engine()

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=settings.app_version,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = engine

    _add_middleware(app, settings)
    _include_routers(app)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration."""
        return {"status": "healthy"}

    logger.info(
        "Custodian API application created (version=%s, store=%s)",
        settings.app_version,
        settings.store_backend.value,
    )

    return app


def _add_middleware(app: FastAPI, settings: Settings) -> None:
    """Add middleware to the application.

    The last middleware added is the outermost one.
    """
    app.add_middleware(ErrorHandlerMiddleware)

    # Outside the error handler so error responses carry the request ID
    app.add_middleware(RequestIDMiddleware)

    allowed_origins = [] if settings.is_production else ["http://localhost:3000"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )


def _include_routers(app: FastAPI) -> None:
    """Include the JSON API routers under /api."""
    app.include_router(sessions_router, prefix="/api")
    app.include_router(quota_router, prefix="/api")
    app.include_router(retention_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")
