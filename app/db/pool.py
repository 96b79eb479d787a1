"""
PostgreSQL connection pool (psycopg_pool) shared by the token store,
the report store and the email dispatch log.

The API opens it in its lifespan; worker processes open it in
run_worker. Connections hand out dict rows, run in autocommit and use
UTC, so every store statement is its own transaction.
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

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

STATEMENT_TIMEOUT = "30s"
SATURATION_PERCENT = 90


class PoolNotReadyError(RuntimeError):
    """A connection was requested while the pool is not open."""


class DatabasePoolManager:
    def __init__(self, conninfo: str | None = None, application_name: str | None = None):
        self._conninfo = conninfo
        self.application_name = application_name or f"report-engine-{settings.environment}"
        self.pool: AsyncConnectionPool | None = None

    async def initialize(self) -> None:
        """Open the pool and prove one round trip. Safe to call again after close()."""
        if self.pool is not None:
            logger.warning("Database pool already initialized")
            return

        config = settings.get_db_pool_config()
        pool = AsyncConnectionPool(
            conninfo=self._conninfo or settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **config,
        )

        try:
            await pool.open(wait=True)
            async with pool.connection() as conn:
                await self._round_trip(conn)
        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            try:
                await pool.close()
            except Exception as close_error:
                logger.warning("Error closing half-open pool", error=str(close_error))
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        self.pool = pool
        logger.info(
            "Database pool initialized",
            min_size=config["min_size"],
            max_size=config["max_size"],
            timeout=config["timeout"],
        )

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(sql.Literal(self.application_name))
        )
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(sql.Literal(STATEMENT_TIMEOUT))
        )

    @staticmethod
    async def _round_trip(conn: psycopg.AsyncConnection) -> None:
        async with conn.cursor() as cur:
            await cur.execute("SELECT 1 AS ok")
            row = await cur.fetchone()
        value = row["ok"] if isinstance(row, dict) else row[0]
        if value != 1:
            raise RuntimeError(f"Database round trip returned {value!r}")

    async def close(self) -> None:
        if self.pool is None:
            return

        pool, self.pool = self.pool, None
        try:
            await asyncio.wait_for(pool.close(), timeout=30.0)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")
        except Exception as e:
            logger.error("Error closing database pool", error=str(e))

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        if self.pool is None:
            raise PoolNotReadyError("Database pool not initialized. Call initialize() first.")
        async with self.pool.connection() as conn:
            yield conn

    async def health_check(self) -> dict[str, Any]:
        """Round-trip latency plus pool saturation. Unhealthy above SATURATION_PERCENT in use."""
        if self.pool is None:
            return {"healthy": False, "error": "Pool not initialized", "service": "database_pool"}

        try:
            started = time.time()
            async with self.pool.connection() as conn:
                await self._round_trip(conn)
            round_trip_ms = round((time.time() - started) * 1000, 2)
        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        stats = self.pool.get_stats()
        size = stats.get("pool_size", 0)
        available = stats.get("pool_available", 0)
        waiting = stats.get("requests_waiting", 0)
        in_use_percent = round((size - available) / size * 100, 2) if size else 0.0

        health = {
            "healthy": in_use_percent < SATURATION_PERCENT,
            "service": "database_pool",
            "connection_time_ms": round_trip_ms,
            "pool_stats": {
                "pool_size": size,
                "pool_available": available,
                "pool_utilization_percent": in_use_percent,
                "requests_waiting": waiting,
            },
        }
        if waiting:
            health["warnings"] = [f"Requests waiting for connections: {waiting}"]
        return health


db_pool = DatabasePoolManager()


async def get_db_connection():
    """Pooled connection context manager, used as `async with await get_db_connection()`."""
    return db_pool.connection()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
