"""Custodian database module.

Database models and migrations:
- SQLAlchemy 2.x ORM models
- Alembic migration configuration
- Connection pooling via psycopg
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from custodian.core.config import DatabaseSettings

# Module-level engine and session factory (initialized on first use)
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def to_async_url(url: str) -> str:
    """Rewrite a plain PostgreSQL URL to use the async psycopg driver.

    Args:
        url: Connection URL as configured.

    Returns:
        URL with the ``postgresql+psycopg`` scheme.
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    return url


def _init_engine(database: DatabaseSettings | None = None) -> None:
    """Initialize the database engine and session factory."""
    global _engine, _async_session_factory

    if _engine is not None:
        return

    if database is None:
        from custodian.core.settings import get_settings

        database = get_settings().database

    if database.url is None:
        msg = "Database URL is not configured"
        raise RuntimeError(msg)

    _engine = create_async_engine(
        to_async_url(str(database.url)),
        pool_size=database.pool_size,
        max_overflow=database.max_overflow,
        pool_timeout=database.pool_timeout,
        echo=database.echo,
    )

    _async_session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def get_session_factory(
    database: DatabaseSettings | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Return the shared async session factory, creating it on first use.

    Args:
        database: Optional database settings; defaults to the cached settings.

    Returns:
        The process-wide session factory.
    """
    _init_engine(database)

    if _async_session_factory is None:
        msg = "Database session factory not initialized"
        raise RuntimeError(msg)

    return _async_session_factory


async def close_engine() -> None:
    """Close the database engine.

    Call this during application shutdown to clean up connections.
    """
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
