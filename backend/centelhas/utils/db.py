"""Database connection, session management and transactional retries."""

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, TypeVar

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import NullPool
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from centelhas.config import Settings
from centelhas.errors import AppendOnlyViolationError, ConflictError
from centelhas.models import Base
from centelhas.models.guards import is_append_only_violation

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Serialization failure, deadlock detected, lock not available
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01", "55P03"})


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database."""
    if settings.is_sqlite:
        engine = create_async_engine(
            settings.database_url,
            poolclass=NullPool,
            echo=settings.db_echo,
            connect_args={"timeout": settings.lock_timeout_seconds},
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        echo=settings.db_echo,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory; one session per unit of work."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables (and the append-only triggers attached to them)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@asynccontextmanager
async def get_db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Context manager for a committed-on-success session.

    Usage:
        async with get_db_session(factory) as session:
            result = await session.execute(...)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def translate_db_error(exc: DBAPIError) -> Exception:
    """Map driver errors onto the engine's error taxonomy.

    Returns the original exception when there is no better match.
    """
    if is_append_only_violation(exc):
        return AppendOnlyViolationError()

    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return ConflictError(details={"sqlstate": sqlstate})

    message = str(orig or exc).lower()
    if "database is locked" in message or "database table is locked" in message:
        return ConflictError(details={"reason": "database locked"})

    # A concurrent writer inserted the same unique row first
    if isinstance(exc, IntegrityError) and ("unique" in message or sqlstate == "23505"):
        return ConflictError(details={"reason": "unique violation"})

    return exc


async def _apply_lock_timeout(session: AsyncSession, lock_timeout_seconds: float) -> None:
    connection = await session.connection()
    if connection.dialect.name == "postgresql":
        # SET does not accept bind parameters
        timeout_ms = int(lock_timeout_seconds * 1000)
        await session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))


async def run_once(
    session_factory: async_sessionmaker[AsyncSession],
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    lock_timeout_seconds: float | None = None,
) -> T:
    """Run ``operation`` in a single transaction; all-or-nothing."""
    async with session_factory() as session:
        try:
            async with session.begin():
                if lock_timeout_seconds:
                    await _apply_lock_timeout(session, lock_timeout_seconds)
                return await operation(session)
        except StaleDataError as exc:
            raise ConflictError(details={"reason": str(exc)}) from exc
        except DBAPIError as exc:
            translated = translate_db_error(exc)
            if translated is exc:
                raise
            raise translated from exc


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Conflict on attempt %d, retrying: %s",
        retry_state.attempt_number,
        exc,
    )


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    max_attempts: int = 3,
    wait_min: float = 0.05,
    wait_max: float = 0.5,
    lock_timeout_seconds: float | None = None,
    guard: Callable[[], AbstractAsyncContextManager[Any]] | None = None,
) -> T:
    """Run ``operation`` in its own transaction, retrying on ConflictError.

    Every attempt opens a fresh session so no state leaks from the failed
    attempt. ``guard`` (a table lock) is entered around each attempt and held
    until after commit. Once attempts are exhausted the last ConflictError
    propagates; every other error propagates immediately.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=wait_min, min=wait_min, max=wait_max),
        retry=retry_if_exception_type(ConflictError),
        before_sleep=_log_retry,
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            if guard is None:
                return await run_once(
                    session_factory,
                    operation,
                    lock_timeout_seconds=lock_timeout_seconds,
                )
            async with guard():
                return await run_once(
                    session_factory,
                    operation,
                    lock_timeout_seconds=lock_timeout_seconds,
                )

    raise AssertionError("unreachable: tenacity re-raises the last error")
