"""Database engine and session management."""

import os
import logging
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from . import models

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./terminal_charges.db"


def get_database_url(database_url: Optional[str] = None) -> str:
    """
    Resolve the async database URL.

    Falls back to the DATABASE_URL environment variable, then to a local
    SQLite file. Plain PostgreSQL URLs are rewritten to use asyncpg.
    """
    db_url = database_url or os.getenv("DATABASE_URL")
    if not db_url:
        return DEFAULT_DATABASE_URL
    if db_url.startswith("postgresql://"):
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return db_url


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """
    Create an async SQLAlchemy engine.

    Args:
        database_url: Database connection URL. If None, uses get_database_url().
        echo: If True, log all SQL statements.
        pool_size: Number of connections to keep in the pool.
        max_overflow: Maximum overflow connections beyond pool_size.

    Returns:
        AsyncEngine instance.
    """
    url = get_database_url(database_url)

    if url.startswith("sqlite"):
        # An in-memory database only exists on a single shared connection
        if ":memory:" in url or url.endswith("://"):
            return sa_create_async_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return sa_create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    return sa_create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory used by every unit of work."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    One unit of work: commit on success, roll back on error.

    Example:
        async with session_scope(factory) as session:
            charge = await ChargeRepository(session).get_by_id(charge_id)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables defined in models (local runs and tests)."""
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    logger.info("Database tables created successfully.")


class DatabaseManager:
    """
    Database manager class for explicit lifecycle control.

    Example:
        db_manager = DatabaseManager(settings.database_url)
        await db_manager.initialize()

        async with db_manager.session() as session:
            ...

        await db_manager.shutdown()
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
    ):
        self.database_url = database_url
        self.echo = echo
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DatabaseManager not initialized. Call initialize() first.")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not initialized. Call initialize() first.")
        return self._session_factory

    async def initialize(self, create_schema: bool = True) -> None:
        """Initialize the database connection."""
        logger.info("Initializing database connection...")
        self._engine = create_async_engine(
            self.database_url,
            self.echo,
            self.pool_size,
            self.max_overflow,
        )
        self._session_factory = create_session_factory(self._engine)
        if create_schema:
            await create_tables(self._engine)

    async def shutdown(self) -> None:
        """Shutdown the database connection."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed.")

    def session(self):
        """Get a unit-of-work session context."""
        return session_scope(self.session_factory)
