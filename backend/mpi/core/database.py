"""
Database infrastructure.

This module provides the async SQLAlchemy engine, session factory,
and declarative base for all database models. The merge engine receives
the session factory rather than a session: every data-store round trip
opens its own short-lived session and commits before returning.
"""

import logging
from typing import Any
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, event, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import Pool

from mpi.core.config import settings

# Configure logger
logger = logging.getLogger(__name__)

# Convert DATABASE_URL to use asyncpg driver if needed
database_url = settings.DATABASE_URL
if database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Create async engine with connection pooling
engine: AsyncEngine = create_async_engine(
    database_url,
    pool_size=20,
    max_overflow=10,
    pool_pre_ping=False,
    pool_recycle=3600,  # Recycle connections after 1 hour
    echo=settings.DB_ECHO,
    pool_reset_on_return="rollback",
)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Build a session factory with the engine's transaction settings.

    Args:
        bind: Async engine the sessions connect through

    Returns:
        async_sessionmaker producing AsyncSession instances
    """
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,  # Don't expire objects after commit (avoid extra queries)
        autoflush=False,  # Explicit flush control
    )


AsyncSessionLocal: async_sessionmaker[AsyncSession] = create_session_factory(engine)


def utcnow() -> datetime:
    """Return the current timezone-aware UTC time."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """
    Base class for all database models.

    Provides the timestamp columns every table carries:
    - created_at: Timezone-aware timestamp of record creation (UTC)
    - updated_at: Timezone-aware timestamp of last update (UTC)

    Primary keys are declared per model because the tables owned by the
    wider platform use different key columns (e.g. profiles.user_id).
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# Connection pool event listeners for observability
@event.listens_for(Pool, "connect")
def receive_connect(dbapi_conn: Any, connection_record: Any) -> None:
    """Log when a new connection is established to the database."""
    logger.debug("Database connection established")


@event.listens_for(Pool, "checkout")
def receive_checkout(dbapi_conn: Any, connection_record: Any, connection_proxy: Any) -> None:
    """Log when a connection is checked out from the pool."""
    logger.debug("Database connection checked out from pool")


@event.listens_for(Pool, "checkin")
def receive_checkin(dbapi_conn: Any, connection_record: Any) -> None:
    """Log when a connection is returned to the pool."""
    logger.debug("Database connection returned to pool")


async def init_db() -> None:
    """
    Initialize database connection on application startup.

    Verifies that the database is accessible by executing a simple query
    so the service fails fast if the database is not available.

    Raises:
        Exception: If database connection cannot be established
    """
    db_info = database_url.split("@")[-1] if "@" in database_url else "unknown"
    try:
        async with engine.begin() as conn:
            result = await conn.execute(text("SELECT 1"))
            assert result.scalar() == 1
        logger.info(
            "Database connection established successfully",
            extra={"database_url": db_info},  # Log without credentials
        )
    except Exception as e:
        logger.error(
            "Failed to connect to database",
            extra={"error": str(e), "database_url": db_info},
            exc_info=True,
        )
        raise


async def close_db() -> None:
    """Dispose of the connection pool on application shutdown."""
    await engine.dispose()
    logger.info("Database connections closed and pool disposed")


async def get_db_health(bind: AsyncEngine | None = None) -> dict[str, Any]:
    """
    Check database health status.

    Args:
        bind: Engine to probe, defaults to the application engine

    Returns:
        dict: Health status with 'status' and optional 'error' keys
    """
    try:
        async with (bind or engine).begin() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        logger.error("Database health check failed", extra={"error": str(e)}, exc_info=True)
        return {"status": "unhealthy", "database": "disconnected", "error": str(e)}
