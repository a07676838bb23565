"""
Dialect-aware DML helpers

Skip-duplicate bulk inserts and transaction-scoped locking that behave the
same on PostgreSQL and SQLite, plus flush-time constraint translation.
"""

from typing import Any, Dict, List, Optional, Sequence, Type

import structlog
from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.core.exceptions import CatalogValidationError, ConflictError

logger = structlog.get_logger(__name__)

CHUNK_SIZE = 1000


async def dialect_name(session: AsyncSession) -> str:
    conn = await session.connection()
    return conn.dialect.name


async def insert_ignore(
    session: AsyncSession,
    model: Type[Any],
    rows: Sequence[Dict[str, Any]],
) -> int:
    """
    Bulk insert rows, skipping any that collide with an existing key.

    Returns:
        Number of rows actually inserted
    """
    if not rows:
        return 0

    name = await dialect_name(session)
    if name == "postgresql":
        insert = postgresql.insert
    elif name == "sqlite":
        insert = sqlite.insert
    else:
        raise RuntimeError(f"Unsupported dialect for skip-duplicate inserts: {name}")

    inserted = 0
    pending: List[Dict[str, Any]] = list(rows)
    for i in range(0, len(pending), CHUNK_SIZE):
        chunk = pending[i:i + CHUNK_SIZE]
        stmt = insert(model).values(chunk).on_conflict_do_nothing()
        result = await session.execute(stmt)
        inserted += max(result.rowcount or 0, 0)

    logger.debug(
        "Bulk insert",
        table=model.__tablename__,
        requested=len(pending),
        inserted=inserted,
    )
    return inserted


async def acquire_xact_lock(session: AsyncSession, key: int) -> None:
    """
    Take a transaction-scoped advisory lock on PostgreSQL.

    Released automatically at commit/rollback. SQLite already serializes
    writers, so this is a no-op there.
    """
    if await dialect_name(session) != "postgresql":
        return
    await session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})


# SQLSTATE codes reported by PostgreSQL drivers
UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"


def _violation_kind(error: IntegrityError) -> Optional[str]:
    """'unique', 'foreign_key' or None, from the driver error behind the flush."""
    orig = error.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == UNIQUE_VIOLATION:
        return "unique"
    if code == FOREIGN_KEY_VIOLATION:
        return "foreign_key"
    # sqlite3 only carries the message
    message = str(orig)
    if "UNIQUE constraint failed" in message:
        return "unique"
    if "FOREIGN KEY constraint failed" in message:
        return "foreign_key"
    return None


async def flush_or_conflict(session: AsyncSession, message: str, ids: Optional[Sequence[Any]] = None) -> None:
    """
    Flush pending ORM writes, translating constraint violations.

    Raises:
        ConflictError: the flush hit a unique or primary key constraint
        CatalogValidationError: the flush referenced a missing row
        IntegrityError: any other constraint, left for the 500 handler
    """
    try:
        await session.flush()
    except IntegrityError as e:
        kind = _violation_kind(e)
        logger.info("Integrity violation on flush", kind=kind, error=str(e.orig))
        if kind == "unique":
            raise ConflictError(message, ids=ids) from e
        if kind == "foreign_key":
            raise CatalogValidationError("Referenced record does not exist", ids=ids) from e
        raise
