"""
Query helpers for the token, report and email log stores.

Every helper borrows a pooled connection, runs one statement and maps
psycopg failures onto DatabaseError. Connection-level failures
(psycopg.OperationalError) pass through untouched so with_db_retry can
retry them.
"""

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import Any

import psycopg

from app.db.pool import get_db_connection
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

Row = dict[str, Any]


class DatabaseError(Exception):
    """A statement failed. recoverable=True means the job queue may retry the job."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


async def _run(
    operation: str,
    query: str,
    params: tuple,
    consume: Callable[[psycopg.AsyncCursor], Awaitable[Any]],
) -> Any:
    try:
        async with await get_db_connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await consume(cur)
    except psycopg.OperationalError:
        raise
    except psycopg.Error as e:
        # Constraint violations are data problems, retrying will not fix them
        recoverable = not isinstance(e, psycopg.IntegrityError)
        logger.error(
            "Database statement failed",
            operation=operation,
            query=query[:100],
            error=str(e),
            recoverable=recoverable,
        )
        raise DatabaseError(
            f"Query failed: {e}", operation=operation, recoverable=recoverable
        ) from e


async def _one(cur: psycopg.AsyncCursor) -> Row | None:
    return await cur.fetchone()


async def _all(cur: psycopg.AsyncCursor) -> list[Row]:
    return await cur.fetchall()


async def _rowcount(cur: psycopg.AsyncCursor) -> int:
    return cur.rowcount


async def fetch_one(query: str, params: tuple = ()) -> Row | None:
    """First row as a dict, or None. Also used for INSERT ... RETURNING."""
    return await _run("fetch_one", query, params, _one)


async def fetch_all(query: str, params: tuple = ()) -> list[Row]:
    return await _run("fetch_all", query, params, _all)


async def execute_query(query: str, params: tuple = ()) -> int:
    """Run a write and return the affected row count."""
    return await _run("execute", query, params, _rowcount)


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Retry a store method on connection-level failures with exponential backoff.

    After the last attempt the OperationalError becomes a recoverable
    DatabaseError, which the job queue treats as transient.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except psycopg.OperationalError as e:
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
                            recoverable=True,
                        ) from e

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
