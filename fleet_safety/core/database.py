"""
Database configuration and session management.
"""
import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from fleet_safety.core.config import Settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def get_async_database_url(url: str) -> str:
    """Convert sync database URL to async version."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database."""
    async_url = get_async_database_url(settings.database_url)

    # SQLite doesn't support pool_size/max_overflow, only use them for PostgreSQL
    if async_url.startswith("sqlite"):
        return create_async_engine(async_url, echo=False)

    return create_async_engine(
        async_url,
        echo=False,
        pool_pre_ping=True,
        pool_recycle=180,
        pool_size=5,
        max_overflow=5,
        pool_timeout=10,
        connect_args={
            "timeout": 5,
            "command_timeout": 30,
        },
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine):
    """Initialize database tables."""
    # Register models on the metadata before create_all
    from fleet_safety import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


async def close_db(engine: AsyncEngine):
    """Close database connections."""
    await engine.dispose()
