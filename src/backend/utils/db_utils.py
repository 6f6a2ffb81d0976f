"""PostgreSQL access helpers for the conversation repository.

Every repository call goes through acquire_connection() or transaction(), so
pool exhaustion and statement timeouts surface as DatabaseError subclasses
that the REST and WebSocket error layers map to error codes. Reads are
wrapped in with_retry(); writes are not, since a retried INSERT could
duplicate a message.
"""

from __future__ import annotations

import asyncio
import functools
import random

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, ParamSpec, TypeVar

import asyncpg

from models.error_models import ErrorCode
from utils.logger import logger
from utils.metrics import db_pool_connections

P = ParamSpec("P")
T = TypeVar("T")

HEALTH_CHECK_ACQUIRE_TIMEOUT = 5.0


class DatabaseError(Exception):
    """Database failure with the error code it is reported under."""

    code: ErrorCode = ErrorCode.DATABASE_ERROR


class ConnectionPoolExhausted(DatabaseError):
    """No connection could be created or acquired in time."""

    code = ErrorCode.DATABASE_UNAVAILABLE


class QueryTimeout(DatabaseError):
    """A statement ran past the command or statement timeout."""

    code = ErrorCode.DATABASE_TIMEOUT


async def create_database_pool(
    dsn: str,
    *,
    min_size: int = 2,
    max_size: int = 10,
    command_timeout: float = 60.0,
    connection_timeout: float = 10.0,
    statement_cache_size: int = 100,
    max_inactive_connection_lifetime: float = 300.0,
) -> asyncpg.Pool:
    """Create the application's connection pool.

    Args:
        dsn: PostgreSQL connection string
        min_size: Connections opened at startup
        max_size: Upper bound on open connections
        command_timeout: Client-side query timeout, also applied server-side
            as statement and lock timeout
        connection_timeout: Time allowed for the initial connections
        statement_cache_size: Prepared statements cached per connection
        max_inactive_connection_lifetime: Idle seconds before a connection is closed

    Returns:
        Ready asyncpg pool

    Raises:
        ConnectionPoolExhausted: If the initial connections cannot be established
    """
    timeout_ms = int(command_timeout * 1000)

    async def init_connection(conn: asyncpg.Connection) -> None:
        await conn.execute(f"SET statement_timeout = '{timeout_ms}'")
        await conn.execute(f"SET lock_timeout = '{timeout_ms}'")

    try:
        pool = await asyncio.wait_for(
            asyncpg.create_pool(
                dsn=dsn,
                min_size=min_size,
                max_size=max_size,
                command_timeout=command_timeout,
                statement_cache_size=statement_cache_size,
                max_inactive_connection_lifetime=max_inactive_connection_lifetime,
                init=init_connection,
            ),
            timeout=connection_timeout,
        )
    except asyncio.TimeoutError as e:
        raise ConnectionPoolExhausted(f"Connection pool creation timed out after {connection_timeout}s") from e
    except Exception as e:
        raise ConnectionPoolExhausted(f"Failed to create connection pool: {e}") from e

    if pool is None:
        raise ConnectionPoolExhausted("Failed to create connection pool")
    logger.info(f"Database pool created (min={min_size}, max={max_size}, command_timeout={command_timeout}s)")
    return pool


@asynccontextmanager
async def acquire_connection(
    pool: asyncpg.Pool,
    *,
    timeout: float | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Borrow a connection and translate timeouts into DatabaseError.

    A timeout while waiting for the pool means the pool is exhausted; a
    timeout after the connection was handed out belongs to a statement.

    Raises:
        ConnectionPoolExhausted: If no connection was free within timeout
        QueryTimeout: If a statement on the connection timed out
    """
    acquired = False
    try:
        async with pool.acquire(timeout=timeout) as conn:
            acquired = True
            yield conn
    except (asyncio.TimeoutError, asyncpg.QueryCanceledError) as e:
        if not acquired:
            raise ConnectionPoolExhausted(
                f"Could not acquire database connection within {timeout}s - pool may be exhausted"
            ) from e
        raise QueryTimeout(f"Database statement timed out: {e}") from e


@asynccontextmanager
async def transaction(
    pool: asyncpg.Pool,
    *,
    timeout: float | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Run several statements atomically.

    Example:
        async with transaction(pool) as conn:
            await conn.execute("UPDATE conversations ...")
            await conn.execute("UPDATE messages ...")
    """
    async with acquire_connection(pool, timeout=timeout) as conn, conn.transaction():
        yield conn


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
    retryable_exceptions: tuple[type[Exception], ...] = (
        asyncpg.PostgresConnectionError,
        asyncpg.InterfaceError,
        ConnectionPoolExhausted,
    ),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Retry a read on transient connection failures.

    Backoff is exponential with jitter. QueryTimeout is not retried: a
    statement that timed out once will most likely time out again.

    Args:
        max_attempts: Attempts including the first one
        base_delay: Delay before the first retry, in seconds
        max_delay: Cap on any single delay, in seconds
        retryable_exceptions: Exception types that trigger a retry
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(
                            f"Database read {func.__name__} failed after {max_attempts} attempts: {e}",
                            exc_info=True,
                        )
                        raise

                    delay = min(base_delay * (2 ** (attempt - 1)) + random.uniform(0, 0.5), max_delay)
                    logger.warning(
                        f"Database read {func.__name__} failed (attempt {attempt}/{max_attempts}), "
                        f"retrying in {delay:.2f}s: {e}"
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


async def check_pool_health(pool: asyncpg.Pool) -> dict[str, Any]:
    """Probe the database and publish pool usage to the db_pool_connections gauge."""
    try:
        async with acquire_connection(pool, timeout=HEALTH_CHECK_ACQUIRE_TIMEOUT) as conn:
            is_healthy = await conn.fetchval("SELECT 1") == 1
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        is_healthy = False

    size = pool.get_size()
    free = pool.get_idle_size()
    db_pool_connections.labels(state="free").set(free)
    db_pool_connections.labels(state="used").set(size - free)

    return {
        "healthy": is_healthy,
        "pool_size": size,
        "pool_min_size": pool.get_min_size(),
        "pool_max_size": pool.get_max_size(),
        "free_connections": free,
        "used_connections": size - free,
    }


async def graceful_pool_close(pool: asyncpg.Pool, timeout: float = 10.0) -> None:
    """Let in-flight repository calls return their connections, then close the pool.

    Args:
        pool: The application pool
        timeout: Seconds to wait for borrowed connections before closing anyway
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while (busy := pool.get_size() - pool.get_idle_size()) > 0:
        if loop.time() >= deadline:
            logger.warning(f"Closing database pool with {busy} connection(s) still in use")
            break
        await asyncio.sleep(0.1)

    await pool.close()
    logger.info("Database pool closed")
