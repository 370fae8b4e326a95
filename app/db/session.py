"""
Async Database Session Management

One lazily created engine per process. HTTP requests get a session via
``get_db_session``; payment watchers and the expiry sweep open their own
through ``get_session_factory`` or ``get_db_context``.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings

logger = logging.getLogger(__name__)


_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """
    Get or create the booking datastore engine.

    PostgreSQL gets the pool sizing from settings. SQLite (local runs)
    keeps its own pool and instead waits ``db_pool_timeout`` seconds on a
    locked database, which is how concurrent bookings of one professional
    queue behind each other there.

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    global _engine

    if _engine is None:
        url = settings.database_url_str
        if url.startswith("sqlite"):
            _engine = create_async_engine(
                url,
                echo=settings.db_echo,
                connect_args={"timeout": settings.db_pool_timeout},
            )
        else:
            _engine = create_async_engine(
                url,
                echo=settings.db_echo,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_recycle=settings.db_pool_recycle,
                pool_pre_ping=True,
            )
        logger.info(f"Database engine created for {url.split('://', 1)[0]}")

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the session factory.

    Sessions keep row values after commit, since repositories commit each
    transition and callers keep reading the returned dicts.
    """
    global _async_session_factory

    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
        logger.info("Session factory created")

    return _async_session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding one session per request.

    Repositories commit their own writes; whatever is left open when the
    handler returns is committed here, and rolled back if it raised.
    """
    session = get_session_factory()()

    try:
        yield session
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Database error in request: {e}")
        raise
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Session for work outside a request, such as the ``expire-holds`` command.

    Example:
        async with get_db_context() as db:
            result = await ExpirySweeper(db, notifier).run()
    """
    session = get_session_factory()()

    try:
        yield session
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.error(f"Error in database context: {e}")
        raise
    finally:
        await session.close()


async def check_database_connection() -> bool:
    """Run ``SELECT 1``; used by startup and ``/health``."""
    try:
        async with get_db_context() as db:
            result = await db.execute(text("SELECT 1"))
            result.scalar()
            logger.info("Database connection check successful")
            return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False


async def close_database_connection() -> None:
    """Dispose the engine on shutdown or at the end of a CLI run."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connections closed")
