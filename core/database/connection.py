# Async database connection and session management
import asyncio
import logging
import time
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import text, event
from sqlalchemy.exc import SQLAlchemyError
from contextlib import asynccontextmanager
from typing import AsyncIterator

from core.logging import get_database_logger_safe, get_error_logger_safe

logger = logging.getLogger(__name__)

db_logger = get_database_logger_safe("database_manager")
error_logger = get_error_logger_safe("database_manager")

# The base class for all SQLAlchemy models
Base = declarative_base()

SLOW_QUERY_MS = 500


class DatabaseManager:
    """Owns the async engine and hands out sessions.

    Sessions never auto-commit; the service layer decides transaction
    boundaries (``async with session.begin()``).
    """

    def __init__(self, db_url: str, environment: str = "development",
                 schema_management: str = "auto", echo: bool = False):
        engine_kwargs = {"echo": echo}
        if not db_url.startswith("sqlite"):
            engine_kwargs.update(
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
            )
        self._engine = create_async_engine(db_url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            self._engine,
            expire_on_commit=False,
            class_=AsyncSession
        )
        self._environment = environment
        self._schema_management = schema_management
        self._setup_database_logging()

    @property
    def engine(self):
        return self._engine

    async def init(self, schema_management: str = None):
        """Create tables unless schema management is external."""
        schema_mgmt = schema_management or self._schema_management

        if schema_mgmt == "none":
            logger.info("Database schema managed externally, skipping create_all")
            return

        # Import registers the mapped classes on Base.metadata
        from core.database import models  # noqa: F401

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized with create_all ({schema_mgmt} mode)")

    async def verify_connection(self) -> bool:
        """Verify database connection is ready"""
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
                return True
        except Exception as e:
            logger.error(f"Database connection verification failed: {e}")
            return False

    async def wait_for_ready(self, timeout: int = 30, check_interval: float = 1.0):
        """Wait for database to be ready with timeout"""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while (loop.time() - start_time) < timeout:
            if await self.verify_connection():
                logger.info("Database connection verified")
                return True

            logger.info("Database not ready, waiting...")
            await asyncio.sleep(check_interval)

        raise RuntimeError(f"Database not ready after {timeout} seconds")

    async def shutdown(self):
        """Closes the database connection pool"""
        await self._engine.dispose()
        logger.info("Database connection pool closed.")

    def _setup_database_logging(self):
        """Log slow statements to the database channel."""

        @event.listens_for(self._engine.sync_engine, "before_cursor_execute")
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            context._query_start_time = time.time()

        @event.listens_for(self._engine.sync_engine, "after_cursor_execute")
        def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            if not hasattr(context, '_query_start_time'):
                return
            execution_time = (time.time() - context._query_start_time) * 1000
            if execution_time > SLOW_QUERY_MS:
                db_logger.warning("Slow database query detected",
                                  operation="query_execution",
                                  execution_time_ms=execution_time,
                                  query_type=statement.split()[0].upper() if statement else "UNKNOWN")

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """Provides a new database session context manager WITHOUT auto-commit."""
        session_start_time = time.time()
        async with self._session_factory() as session:
            try:
                yield session
            except Exception as session_error:
                await session.rollback()
                if not isinstance(session_error, SQLAlchemyError):
                    raise
                error_logger.error("Database session error with rollback",
                                   error=str(session_error),
                                   session_duration_ms=(time.time() - session_start_time) * 1000,
                                   environment=self._environment)
                raise
