"""
PostgreSQL pool adapter (asyncpg)

Implements the DatabasePool capability on top of asyncpg.Pool. Timeouts are
pool-wide: DB_STATEMENT_TIMEOUT_MS is sent as the server statement_timeout,
DB_QUERY_TIMEOUT is asyncpg's client-side command_timeout.

Rows are returned as plain dicts so they can be cached as JSON.
"""

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

import asyncpg

from almacen.core.config.settings import Settings
from almacen.core.exceptions import DatabaseConnectionError
from almacen.core.interfaces.database import Row
from almacen.core.logging.logger import get_logger

logger = get_logger(__name__)


def _rows(records: list[asyncpg.Record]) -> list[Row]:
    return [dict(record) for record in records]


class PostgresConnection:
    """A checked-out asyncpg connection."""

    def __init__(self, pool: asyncpg.Pool, connection: asyncpg.Connection):
        self._pool = pool
        self._connection = connection
        self._released = False

    async def query(self, text: str, params: Sequence[Any] | None = None) -> list[Row]:
        return _rows(await self._connection.fetch(text, *(params or ())))

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._pool.release(self._connection)


class PostgresDatabasePool:
    """
    asyncpg-backed DatabasePool.

    Usage:
        pool = PostgresDatabasePool(settings)
        await pool.open()
        rows = await pool.query("SELECT * FROM materia_prima WHERE id = $1", [5])

    If open() fails at startup the pool stays unopened and every checkout
    retries it, so the service recovers once the database is reachable.
    Only an explicit close() stops further reconnects.
    """

    def __init__(self, settings: Settings):
        self._settings = settings.database
        self._pool: asyncpg.Pool | None = None
        self._waiting = 0
        self._closed = False
        self._open_lock = asyncio.Lock()

    async def _on_connect(self, connection: asyncpg.Connection) -> None:
        logger.debug("Database connection created", stage="POOL.0")

    async def open(self) -> None:
        """
        STAGE-POOL.0: Pool creation
        """
        cfg = self._settings
        try:
            self._pool = await asyncpg.create_pool(
                dsn=cfg.DATABASE_URL,
                min_size=cfg.DB_POOL_MIN,
                max_size=cfg.DB_POOL_MAX,
                max_inactive_connection_lifetime=cfg.DB_IDLE_TIMEOUT,
                timeout=cfg.DB_CONNECT_TIMEOUT,
                command_timeout=cfg.DB_QUERY_TIMEOUT,
                ssl="require" if cfg.DB_SSL else None,
                server_settings={
                    "application_name": cfg.DB_APPLICATION_NAME,
                    "statement_timeout": str(cfg.DB_STATEMENT_TIMEOUT_MS),
                },
                init=self._on_connect,
            )
        except (OSError, asyncpg.PostgresError, TimeoutError) as e:
            raise DatabaseConnectionError.from_exception(
                e, message=f"Failed to open database pool: {e}", application_name=cfg.DB_APPLICATION_NAME
            ) from e

        self._closed = False
        logger.info(
            "Database pool opened",
            stage="POOL.0",
            min_size=cfg.DB_POOL_MIN,
            max_size=cfg.DB_POOL_MAX,
            application_name=cfg.DB_APPLICATION_NAME,
        )

    async def close(self) -> None:
        self._closed = True
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Database pool closed", stage="POOL.9")

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise DatabaseConnectionError("Database pool is not open")
        return self._pool

    async def _ensure_pool(self) -> asyncpg.Pool:
        """
        STAGE-POOL.0.1: Lazy reopen after a failed startup
        """
        if self._pool is not None:
            return self._pool
        if self._closed:
            raise DatabaseConnectionError("Database pool is closed")
        async with self._open_lock:
            if self._pool is None:
                logger.info("Retrying database pool creation", stage="POOL.0")
                try:
                    await self.open()
                except DatabaseConnectionError as e:
                    logger.warning("Database still unreachable", stage="POOL.0", error=e.message)
                    raise e.with_context(lazy_reopen=True)
        return self._require_pool()

    async def _acquire(self) -> asyncpg.Connection:
        pool = await self._ensure_pool()
        self._waiting += 1
        try:
            return await pool.acquire(timeout=self._settings.DB_CONNECT_TIMEOUT)
        finally:
            self._waiting -= 1

    @asynccontextmanager
    async def _checkout(self) -> AsyncIterator[asyncpg.Connection]:
        connection = await self._acquire()
        try:
            yield connection
        finally:
            await self._require_pool().release(connection)

    async def query(self, text: str, params: Sequence[Any] | None = None) -> list[Row]:
        async with self._checkout() as connection:
            return _rows(await connection.fetch(text, *(params or ())))

    async def connect(self) -> PostgresConnection:
        connection = await self._acquire()
        return PostgresConnection(self._require_pool(), connection)

    @property
    def total_count(self) -> int:
        return self._pool.get_size() if self._pool is not None else 0

    @property
    def idle_count(self) -> int:
        return self._pool.get_idle_size() if self._pool is not None else 0

    @property
    def waiting_count(self) -> int:
        return self._waiting
