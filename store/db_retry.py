"""
Database retry utilities for handling transient database errors.

Owner lookups and pointer updates run against whatever database hosts the
owning tables, so retry logic recognises transient errors from each
supported backend:

SQLite errors:
- "database is locked" - concurrent write contention
- "SQLITE_BUSY" / "SQLITE_LOCKED" - database busy states

PostgreSQL errors:
- Deadlocks (40P01)
- Serialization failures (40001)
- Connection errors

MySQL errors:
- Deadlocks (1213) and lock wait timeouts (1205)
- "server has gone away" / "lost connection" (2006 / 2013)
"""

import asyncio
import logging
import random
import time
from typing import Any, Callable, Optional, TypeVar

from databases import Database

logger = logging.getLogger(__name__)

# Queries slower than this are logged with their SQL
SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2

_RETRYABLE_PATTERNS = (
    # SQLite
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
    # PostgreSQL
    "deadlock detected",
    "could not serialize access",
    "could not obtain lock",
    "canceling statement due to lock timeout",
    "server closed the connection unexpectedly",
    # MySQL
    "deadlock found when trying to get lock",
    "lock wait timeout exceeded",
    "server has gone away",
    "lost connection to mysql server",
    # Shared
    "connection refused",
    "connection reset",
    "lock timeout",
)

_RETRYABLE_SQLSTATES = frozenset(["40P01", "40001"])
_RETRYABLE_MYSQL_CODES = frozenset([1205, 1213, 2006, 2013])


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries exhausted."""

    pass


def is_retryable_database_error(exc: BaseException) -> bool:
    """Check if an exception is a transient database error worth retrying."""
    error_str = str(exc).lower()
    for pattern in _RETRYABLE_PATTERNS:
        if pattern in error_str:
            return True

    # asyncpg exposes sqlstate; PyMySQL/aiomysql put the error code in args[0]
    if getattr(exc, "sqlstate", None) in _RETRYABLE_SQLSTATES:
        return True
    args = getattr(exc, "args", ())
    if args and isinstance(args[0], int) and args[0] in _RETRYABLE_MYSQL_CODES:
        return True

    # The databases library wraps underlying driver exceptions
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


async def execute_with_retry(
    func: Callable,
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    **kwargs,
) -> T:
    """
    Execute an async function with retry logic for transient database errors.

    Uses exponential backoff with jitter to reduce contention.

    Raises:
        DatabaseRetryableError: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise

            last_exception = e

            if attempt < max_retries:
                delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
                # Add jitter (+/-25%) to prevent thundering herd
                jitter = delay * 0.25 * (2 * random.random() - 1)
                delay = max(0.01, delay + jitter)

                logger.warning(
                    f"Database error (attempt {attempt + 1}/{max_retries + 1}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(f"Database operation failed after {max_retries + 1} attempts: {last_exception}")


def _log_if_slow(query: Any, started: float) -> None:
    elapsed = time.monotonic() - started
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")


# =============================================================================
# Database Operation Wrappers
# =============================================================================


async def fetch_one_with_retry(database: Database, query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Execute a fetch_one query with retry logic. Returns a single row or None."""

    async def _fetch():
        started = time.monotonic()
        result = await database.fetch_one(query)
        _log_if_slow(query, started)
        return result

    return await execute_with_retry(_fetch, max_retries=max_retries)


async def fetch_all_with_retry(database: Database, query, max_retries: int = DEFAULT_MAX_RETRIES):
    """Execute a fetch_all query with retry logic. Returns a list of rows."""

    async def _fetch():
        started = time.monotonic()
        result = await database.fetch_all(query)
        _log_if_slow(query, started)
        return result

    return await execute_with_retry(_fetch, max_retries=max_retries)


async def db_execute_with_retry(
    database: Database,
    query,
    values=None,
    max_retries: int = DEFAULT_MAX_RETRIES,
):
    """
    Execute a database write query with retry logic for transient database errors.

    Returns:
        The driver result (row count or last row id, depending on backend)

    Raises:
        DatabaseRetryableError: If all retries are exhausted
    """

    async def _execute():
        started = time.monotonic()
        if values is not None:
            result = await database.execute(query, values)
        else:
            result = await database.execute(query)
        _log_if_slow(query, started)
        return result

    return await execute_with_retry(_execute, max_retries=max_retries)
