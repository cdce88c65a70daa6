from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from webhook_relay.core.config import Settings, settings as default_settings
from webhook_relay.core.logging import get_logger

logger = get_logger(__name__)

# Create base class for models
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_engine(app_settings: Optional[Settings] = None) -> AsyncEngine:
    """Create the async engine for the configured database."""
    app_settings = app_settings or default_settings
    return create_async_engine(
        app_settings.async_database_url,
        pool_size=app_settings.DATABASE_POOL_SIZE,
        max_overflow=app_settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
        echo=app_settings.DEBUG,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create a session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """
    Run a unit of work in its own session and transaction.

    Commits when the block exits cleanly, rolls back and re-raises otherwise.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error("Database session error", error=str(e))
            await session.rollback()
            raise


class DatabaseManager:
    """
    Database manager for handling schema and connection lifecycle.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def create_tables(self):
        """Create all tables."""
        # Register every model on Base.metadata
        import webhook_relay.models  # noqa: F401

        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created successfully")
        except Exception as e:
            logger.error("Error creating database tables", error=str(e))
            raise

    async def drop_tables(self):
        """Drop all tables."""
        import webhook_relay.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped")

    async def close_connections(self):
        """Close all database connections."""
        try:
            await self.engine.dispose()
            logger.info("Database connections closed")
        except Exception as e:
            logger.error("Error closing database connections", error=str(e))
