"""
Database connection and session management
Handles async operations and connection pooling
"""

import time
from typing import Any, Optional
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncConnection, AsyncSession, async_sessionmaker
)
from sqlalchemy.orm import declarative_base
from contextlib import asynccontextmanager
import structlog
from photo_extractor.core.config import DatabaseConfig

logger = structlog.get_logger()

Base = declarative_base()


class TrackedConnection:
    """
    A checked-out connection plus the state used to diagnose slow holders
    The underlying connection is never modified
    """

    def __init__(self, connection: AsyncConnection, slow_after: float = 5.0):
        self.connection = connection
        self.slow_after = slow_after
        self.checked_out_at = time.monotonic()
        self.last_statement: Optional[str] = None
        self.statement_count = 0

    async def execute(self, statement, parameters: Any = None):
        """Execute a statement and remember it"""
        self.last_statement = str(statement)
        self.statement_count += 1
        if parameters is None:
            return await self.connection.execute(statement)
        return await self.connection.execute(statement, parameters)

    @property
    def held_for(self) -> float:
        return time.monotonic() - self.checked_out_at

    def release(self):
        """Report connections that were held for too long"""
        if self.held_for > self.slow_after:
            logger.warning(
                "Database connection held for too long",
                held_seconds=round(self.held_for, 2),
                statements=self.statement_count,
                last_statement=(self.last_statement or "")[:200]
            )


class DatabaseManager:
    """Manages database connections and sessions"""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.engine = None
        self.session_factory = None

    async def initialize(self):
        """Initialize the database engine and session factory"""
        engine_args = {
            "echo": self.config.echo_sql,
        }

        # Only add pooling options for non-SQLite databases
        if "sqlite" not in self.config.database_url:
            engine_args.update({
                "pool_size": self.config.pool_size,
                "max_overflow": self.config.max_overflow,
                "pool_timeout": self.config.pool_timeout,
                "pool_pre_ping": True,  # Verify connections are alive
            })

        # Create async engine with connection pooling
        self.engine = create_async_engine(
            self.config.database_url,
            **engine_args
        )

        # Create session factory
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Make sure every model is registered before creating tables
        import photo_extractor.models.scan  # noqa: F401

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("Database initialized", url=self.config.database_url)

    @asynccontextmanager
    async def get_session(self):
        """Provide a transactional scope for database operations"""
        async with self.session_factory() as session:
            try:
                yield session

                if session.is_active and session.in_transaction():
                    await session.commit()

            except Exception as e:
                if session.is_active:
                    try:
                        await session.rollback()
                        logger.debug("Session rolled back after exception", error=str(e))
                    except Exception as rollback_error:
                        logger.error("Failed to rollback session", error=str(rollback_error))

                raise

    @asynccontextmanager
    async def transaction(self):
        """Run statements on one connection inside BEGIN/COMMIT"""
        async with self.engine.begin() as conn:
            tracked = TrackedConnection(conn, self.config.slow_checkout_seconds)
            try:
                yield tracked
            finally:
                tracked.release()

    async def close(self):
        """Close all database connections"""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")
