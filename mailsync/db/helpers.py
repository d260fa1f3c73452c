"""
Query helpers for the repository layer.

Every helper accepts an optional `connection=` so repositories can group
statements inside db_pool.transaction(); without one a pooled
autocommit connection is borrowed for the single statement.
"""

import asyncio
import functools
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from mailsync.db.pool import get_db_connection
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

QUERY_LOG_CHARS = 100


class DatabaseError(Exception):
    """Query failure; the psycopg error is kept as __cause__."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@asynccontextmanager
async def _borrow(
    connection: psycopg.AsyncConnection | None, query: str, operation: str
) -> AsyncIterator[psycopg.AsyncConnection]:
    try:
        if connection is not None:
            yield connection
        else:
            async with await get_db_connection() as conn:
                yield conn
    except psycopg.Error as e:
        logger.error(
            f"Database {operation} error", query=query[:QUERY_LOG_CHARS], error=str(e)
        )
        raise DatabaseError(f"Query failed: {e}", operation=operation) from e


async def fetch_one(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """Run a query and return its first row (dict_row), or None."""
    async with _borrow(connection, query, "fetch_one") as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchone() or None


async def fetch_all(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    async with _borrow(connection, query, "fetch_all") as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchall()


async def execute_query(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """Run a write statement and return the affected row count."""
    async with _borrow(connection, query, "execute") as conn:
        cursor = await conn.execute(query, params)
        return cursor.rowcount


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Retry a repository call whose DatabaseError was caused by
    psycopg.OperationalError (dropped connection, server restart).

    Integrity and data errors are permanent and surface immediately. The
    delay doubles on each attempt.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except DatabaseError as e:
                    if not isinstance(e.__cause__, psycopg.OperationalError):
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            "Database operation failed after all retries",
                            operation=func.__name__,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise DatabaseError(
                            f"Operation failed after {max_retries} retries: {e}",
                            operation=func.__name__,
                            recoverable=False,
                        ) from e.__cause__

                    delay = base_delay * (2**attempt)
                    attempt += 1
                    logger.warning(
                        "Database operation failed, retrying",
                        operation=func.__name__,
                        attempt=attempt,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
