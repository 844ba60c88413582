"""Database configuration and setup for GrailScan.

Handles SQLite async database setup with proper concurrency handling:
- WAL mode for better concurrent reads/writes
- Connection pooling with appropriate sizing
- Retry logic for database locks
- Session factory for dependency injection
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel.ext.asyncio.session import AsyncSession as SQLModelAsyncSession

from grailscan.core.metrics import (
    db_connections_active,
    db_connections_idle,
    db_lock_errors_total,
    db_pool_size,
    db_retries_failed_total,
    db_retry_attempts_total,
    db_retry_duration_seconds,
)

logger = structlog.get_logger("grailscan.database")

SessionFactory = async_sessionmaker[SQLModelAsyncSession]


def create_database_engine(
    database_file: Path | str,
    echo: bool = False,
) -> AsyncEngine:
    """Create and configure the database engine for async SQLite.

    Args:
        database_file: Path to the SQLite database file.
        echo: If True, log all SQL statements.

    Returns:
        Configured AsyncEngine instance.
    """
    database_url = f"sqlite+aiosqlite:///{database_file}"

    # Wait up to 30 seconds for locks to be released instead of failing immediately
    connect_args = {"timeout": 30.0}

    pool_size = 10

    engine = create_async_engine(
        database_url,
        echo=echo,
        connect_args=connect_args,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=20,
    )

    db_pool_size.set(pool_size)

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
        """Enable WAL mode and other SQLite optimizations."""
        cursor = dbapi_conn.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    @event.listens_for(engine.sync_engine, "checkout")
    def on_connection_checkout(
        dbapi_conn: Any, connection_record: Any, connection_proxy: Any
    ) -> None:
        pool = engine.sync_engine.pool
        db_connections_active.set(pool.checkedout())  # type: ignore[attr-defined]
        db_connections_idle.set(pool.checkedin())  # type: ignore[attr-defined]

    @event.listens_for(engine.sync_engine, "checkin")
    def on_connection_checkin(dbapi_conn: Any, connection_record: Any) -> None:
        pool = engine.sync_engine.pool
        db_connections_active.set(pool.checkedout())  # type: ignore[attr-defined]
        db_connections_idle.set(pool.checkedin())  # type: ignore[attr-defined]

    logger.info(
        "Database engine created",
        database_file=str(database_file),
        echo=echo,
        pool_size=pool_size,
    )

    return engine


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Create a session factory for database sessions.

    expire_on_commit=False avoids lazy loading of expired attributes after commit
    in async sessions.

    Args:
        engine: The database engine.

    Returns:
        Configured async_sessionmaker instance.
    """
    return async_sessionmaker(
        engine,
        class_=SQLModelAsyncSession,
        expire_on_commit=False,
    )


async def init_database(engine: AsyncEngine) -> None:
    """Create all tables registered on the SQLModel metadata."""
    from grailscan.db.models import metadata

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.debug("Database tables ensured")


async def retry_db_operation(
    operation: Callable[[], Awaitable[Any]],
    session: SQLModelAsyncSession | None = None,
    max_retries: int = 5,
    retry_delay: float = 0.1,
    operation_type: str = "unknown",
) -> Any:
    """Retry a database operation on SQLite lock errors with exponential backoff.

    Args:
        operation: Callable returning an awaitable (not already awaited).
        session: Optional session to roll back after a lock error.
        max_retries: Maximum number of attempts.
        retry_delay: Initial delay in seconds; doubles with each retry.
        operation_type: Label for metrics (e.g. "query", "insert").

    Returns:
        Result of the operation.

    Raises:
        OperationalError: If the operation still fails after max_retries, or
            fails for a reason other than a lock.
    """
    start_time = time.time()

    for attempt in range(max_retries):
        try:
            return await operation()
        except OperationalError as exc:
            if "locked" in str(exc).lower() and attempt < max_retries - 1:
                db_lock_errors_total.inc()
                db_retry_attempts_total.labels(operation_type=operation_type).inc()

                logger.debug(
                    "Database lock detected, retrying",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    operation_type=operation_type,
                    error=str(exc)[:100],
                )

                if session is not None:
                    try:
                        await session.rollback()
                    except Exception as rollback_exc:
                        logger.debug(
                            "Error during rollback after lock",
                            error=str(rollback_exc)[:100],
                        )

                await asyncio.sleep(retry_delay * (2**attempt))
                continue

            if attempt > 0:
                db_retries_failed_total.labels(operation_type=operation_type).inc()
                db_retry_duration_seconds.labels(operation_type=operation_type).observe(
                    time.time() - start_time
                )

            logger.error(
                "Database operation failed",
                attempt=attempt + 1,
                max_retries=max_retries,
                operation_type=operation_type,
                error=str(exc)[:200],
            )
            raise

    raise RuntimeError(f"Operation failed after {max_retries} retries")
