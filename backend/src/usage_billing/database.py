"""Database session management with async SQLAlchemy."""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from usage_billing.config import settings
from usage_billing.exceptions import ConcurrencyConflict

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Postgres SQLSTATEs for serialization failure, deadlock and lock timeout
RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}

# Create async engine
engine = create_async_engine(
    str(settings.database_url),
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=20,
    max_overflow=10,
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a database session.

    The request's work commits as one unit; lock conflicts surface as
    ConcurrencyConflict.

    Yields:
        AsyncSession: Database session for the request lifecycle
    """
    async with AsyncSessionLocal() as session:
        async with unit_of_work(session):
            yield session


def is_lock_conflict(exc: DBAPIError) -> bool:
    """Return True when a DBAPI error is a lock or serialization failure."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    # SQLite reports contention as an OperationalError
    return isinstance(exc, OperationalError) and "locked" in str(exc).lower()


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    Commit everything done inside the block, or roll all of it back.

    Lock and serialization failures are re-raised as ConcurrencyConflict.

    Args:
        session: Session whose pending work forms the unit

    Yields:
        AsyncSession: The same session
    """
    try:
        yield session
        await session.commit()
    except DBAPIError as e:
        await session.rollback()
        if is_lock_conflict(e):
            raise ConcurrencyConflict(str(e.orig or e)) from e
        raise
    except Exception:
        await session.rollback()
        raise


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    backoff_seconds: float = 0.05,
) -> T:
    """
    Run a whole unit of work, retrying it on ConcurrencyConflict.

    Args:
        operation: Zero-argument coroutine factory performing one unit of work
        attempts: Maximum number of attempts
        backoff_seconds: Base delay, doubled after each conflict

    Returns:
        The operation's result

    Raises:
        ConcurrencyConflict: If every attempt conflicted
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ConcurrencyConflict:
            if attempt == attempts:
                raise
            logger.warning("concurrency_conflict_retry", attempt=attempt)
            await asyncio.sleep(backoff_seconds * (2 ** (attempt - 1)))
    raise ConcurrencyConflict("retry attempts exhausted")


async def run_in_transaction(
    session: AsyncSession,
    operation: Callable[..., Awaitable[T]],
    *args,
    attempts: int = 3,
    backoff_seconds: float = 0.05,
) -> T:
    """
    Run ``operation(*args)`` as its own committed unit of work, retrying conflicts.

    Batch sweeps use this per item so one item's failure rolls back only
    that item.
    """

    async def attempt() -> T:
        async with unit_of_work(session):
            return await operation(*args)

    return await run_with_retry(attempt, attempts=attempts, backoff_seconds=backoff_seconds)


# Declarative base for all models
Base = declarative_base()
