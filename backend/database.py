"""
Database engine and session management for the ExamVault backend.

Uses SQLAlchemy async engine with aiosqlite for non-blocking DB operations
inside FastAPI. Tables are auto-created on server startup via init_db().
"""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──────────────────────────────────────────────────────────

# Convert sqlite:///... → sqlite+aiosqlite:///... for async driver
_raw_url = settings.database_url
if _raw_url.startswith("sqlite:///"):
    _async_url = _raw_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
else:
    _async_url = _raw_url

# Writers take the write lock at BEGIN (IMMEDIATE) and wait on the busy
# handler; a deferred BEGIN can deadlock two upgrading readers.
SQLITE_CONNECT_ARGS = {"timeout": 30, "isolation_level": "IMMEDIATE"}
_connect_args = SQLITE_CONNECT_ARGS if _async_url.startswith("sqlite") else {}

engine = create_async_engine(
    _async_url,
    echo=(settings.environment == "development"),
    connect_args=_connect_args,
    future=True,
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# ── Helpers ─────────────────────────────────────────────────────────

async def init_db() -> None:
    """Create all tables. Called once on server startup."""
    # Import models so Base.metadata knows about them
    import db_models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created (or already exist)")


async def get_db() -> AsyncSession:
    """FastAPI dependency: yields an async session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


T = TypeVar("T")


async def run_in_transaction(
    db: AsyncSession,
    work: Callable[[], Awaitable[T]],
    *,
    attempts: int | None = None,
    label: str = "transaction",
) -> T:
    """
    Run `work` as one unit: commit on success, roll back on any error.

    OperationalError (locked database, dropped connection) re-runs the whole
    unit from a clean session state up to `attempts` times. Anything else is
    rolled back and re-raised immediately.
    """
    attempts = attempts or settings.store_retry_attempts
    for attempt in range(1, attempts + 1):
        try:
            result = await work()
            await db.commit()
            return result
        except OperationalError as e:
            await db.rollback()
            if attempt >= attempts:
                logger.error(f"{label} failed after {attempts} attempts: {e}")
                raise
            logger.warning(f"{label} hit a transient store error (attempt {attempt}/{attempts}): {e}")
            await asyncio.sleep(0.05 * attempt)
        except BaseException:
            await db.rollback()
            raise
