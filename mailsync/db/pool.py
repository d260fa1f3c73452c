"""
PostgreSQL connection pool shared by the sync worker and the scheduler.

Connections are autocommit with dict rows; multi-statement writes go
through transaction().
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from mailsync.config import settings
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

POOL_CLOSE_TIMEOUT = 30.0  # seconds


class DatabasePoolManager:
    """Owns the process-wide AsyncConnectionPool from worker startup to shutdown."""

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    @property
    def available(self) -> bool:
        return self._initialized and not self._closed

    async def initialize(self) -> None:
        if self._initialized:
            logger.warning("Database pool already initialized")
            return
        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        pool_config = settings.get_db_pool_config()
        logger.info("Initializing database connection pool", **pool_config)

        self.pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )

        try:
            await self.pool.open()
            await self.pool.wait()
            self._initialized = True
            await self._select_one()
        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            self._initialized = False
            try:
                await self.pool.close()
            except Exception as close_error:
                logger.warning("Error closing pool after failed init", error=str(close_error))
            self.pool = None
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info("Database pool ready")

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        # SET cannot be parameterized
        await conn.execute(
            sql.SQL("SET application_name = {}").format(
                sql.Literal(f"mailsync-{settings.environment}")
            )
        )
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute("SET statement_timeout = '60s'")

    async def _select_one(self) -> None:
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1 AS ok")
                row = await cur.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database connection test returned an unexpected row")

    async def close(self) -> None:
        if not self.available:
            return

        logger.info("Closing database connection pool")
        self._initialized = False
        self._closed = True
        try:
            await asyncio.wait_for(self.pool.close(), timeout=POOL_CLOSE_TIMEOUT)
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow an autocommit connection from the pool."""
        if not self._initialized:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        if self._closed:
            raise RuntimeError("Database pool is closed")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow a connection inside a transaction: commit on success, rollback on error."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        """Round-trip check logged at worker startup."""
        if not self.available:
            return {"healthy": False, "error": "Pool not available", "service": "database_pool"}

        started = time.perf_counter()
        try:
            await self._select_one()
        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {"healthy": False, "error": str(e), "service": "database_pool"}

        stats = self.pool.get_stats()
        return {
            "healthy": True,
            "service": "database_pool",
            "connection_time_ms": round((time.perf_counter() - started) * 1000, 2),
            "pool_size": stats.get("pool_size", 0),
            "pool_available": stats.get("pool_available", 0),
            "requests_waiting": stats.get("requests_waiting", 0),
        }


db_pool = DatabasePoolManager()


async def get_db_connection():
    return db_pool.connection()


async def get_db_transaction():
    return db_pool.transaction()
