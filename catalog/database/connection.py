"""
Database Connection Management

Async engine and session lifecycle with SQLAlchemy 2.0.
One session = one transaction = one logical catalog operation.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from sqlalchemy import text

from catalog.config import get_settings
from catalog.core.exceptions import CatalogError

logger = structlog.get_logger(__name__)
settings = get_settings()

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


async def init_database(url: Optional[str] = None) -> AsyncEngine:
    """
    Initialize the database engine and session factory.

    Args:
        url: Override the configured database URL

    Returns:
        AsyncEngine: The initialized database engine
    """
    global _engine, _async_session_factory

    if _engine is not None:
        logger.warning("Database already initialized")
        return _engine

    db_url = url or settings.database.async_url
    engine_config = {
        "echo": settings.database.echo,
        "pool_pre_ping": True,
        # asyncpg keeps its own connections; no SQLAlchemy-side pooling
        "poolclass": NullPool,
    }
    if db_url.startswith("postgresql"):
        engine_config["isolation_level"] = settings.database.isolation_level

    _engine = create_async_engine(db_url, **engine_config)

    _async_session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info(
            "Database connection established",
            host=settings.database.host,
            database=settings.database.db,
            isolation_level=settings.database.isolation_level,
        )
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        raise

    return _engine


async def close_database() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connection pool closed")


def get_engine() -> AsyncEngine:
    """
    Get the database engine.

    Raises:
        RuntimeError: If database is not initialized
    """
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Get a database session wrapped in a single transaction.

    Commits when the block completes, rolls back on any exception so no
    partial closure-table or link-table writes survive a failed operation.

    Example:
        async with get_db() as db:
            await CategoryService(db).create("Coffee", parent_id=beverages_id)
    """
    if _async_session_factory is None:
        logger.error("Database not initialized when get_db() called")
        raise RuntimeError("Database not initialized. Call init_database() first.")

    session = _async_session_factory()
    try:
        yield session
        await session.commit()
    except CatalogError as e:
        # Caller-correctable; nothing unexpected happened
        logger.info("Rolling back rejected operation", error=e.message, error_type=type(e).__name__)
        await session.rollback()
        raise
    except Exception as e:
        logger.error("Database session error, rolling back", error=str(e), error_type=type(e).__name__)
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_db_dependency() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for database sessions.

    Example:
        @router.get("/categories")
        async def list_categories(db: AsyncSession = Depends(get_db_dependency)):
            ...
    """
    async with get_db() as session:
        yield session


async def _ping() -> None:
    async with get_db() as db:
        await db.execute(text("SELECT 1"))


async def check_database_health(timeout: Optional[float] = None) -> dict:
    """
    Probe the database, racing the query against a short timeout.

    Returns:
        dict: {"status": "up", "latency_ms": ...} or {"status": "down", ...}
    """
    timeout = timeout if timeout is not None else settings.database.health_timeout_seconds
    start = time.perf_counter()
    try:
        await asyncio.wait_for(_ping(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Database health probe timed out", timeout_s=timeout)
        return {"status": "down", "reason": "timeout"}
    except Exception as e:
        return {"status": "down", "error": str(e)}

    latency_ms = (time.perf_counter() - start) * 1000
    return {"status": "up", "latency_ms": round(latency_ms, 2)}
