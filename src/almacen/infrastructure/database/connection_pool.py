"""
Enhanced Connection Pool

Layers query caching, performance metrics, slow-query detection, retry with
exponential backoff and transactional retry on top of a raw DatabasePool.

STAGE-POOL: Database access
---------------------------
POOL.1: Cache lookup (optional, skips the database on hit)
POOL.2: Execution against the raw pool
POOL.3: Metric recording / slow-query detection
POOL.4: Retry with backoff
POOL.5: Transactions (BEGIN / COMMIT / ROLLBACK)
POOL.6: Health probe

Error policy:
    Unlike CacheService, failures here are never swallowed. Errors are logged
    with a truncated query and re-raised unchanged; cache problems are the
    only thing degraded silently (the query simply runs).

Author: Almacen Platform Team
Date: 2025-12-09
"""

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, TypeVar

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential_jitter

from almacen.core.config.constants import (
    HEALTH_CHECK_QUERY,
    QUERY_LOG_TEXT_LENGTH,
    QUERY_METRIC_TEXT_LENGTH,
    RETRY_JITTER_SECONDS,
    TRANSACTION_RETRY_DELAY_SECONDS,
)
from almacen.core.config.settings import Settings
from almacen.core.interfaces.database import DatabasePool, PooledConnection, Row
from almacen.core.logging.logger import get_logger
from almacen.infrastructure.cache.cache_service import TTL, CacheService

if TYPE_CHECKING:
    from almacen.infrastructure.monitoring.metrics_collector import MetricsCollector

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class QueryCacheOptions:
    """Cache a query result under key for ttl (class name or seconds)."""

    key: str
    ttl: TTL = None


@dataclass
class QueryPerformanceMetric:
    query: str
    execution_time: float
    row_count: int
    cache_hit: bool
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "executionTime": round(self.execution_time, 3),
            "rowCount": self.row_count,
            "cacheHit": self.cache_hit,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ConnectionPoolStats:
    """
    Live pool counts plus timing derived from the metric buffer.

    average_acquisition_time / last_acquisition_time are query execution
    times in milliseconds (including cache hits), not connection wait time.
    The names are kept for compatibility with existing dashboards.
    """

    total_count: int
    idle_count: int
    waiting_count: int
    active_count: int
    total_connections: int
    average_acquisition_time: float
    last_acquisition_time: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCount": self.total_count,
            "idleCount": self.idle_count,
            "waitingCount": self.waiting_count,
            "activeCount": self.active_count,
            "totalConnections": self.total_connections,
            "averageAcquisitionTime": round(self.average_acquisition_time, 3),
            "lastAcquisitionTime": round(self.last_acquisition_time, 3),
        }


class EnhancedConnectionPool:
    """
    Metered, optionally cached access to the relational database.

    Usage:
        pool = EnhancedConnectionPool(raw_pool, cache, settings)
        rows = await pool.query(
            "SELECT * FROM materia_prima WHERE activo = $1",
            [True],
            cache=QueryCacheOptions(key="materials:active", ttl="medium"),
        )

        async def move_stock(conn):
            await conn.query("UPDATE materia_prima SET stock = stock - $1 WHERE id = $2", [5, 10])
            return await conn.query("INSERT INTO movimientos ... RETURNING id", [...])

        created = await pool.transaction(move_stock)
    """

    def __init__(
        self,
        pool: DatabasePool,
        cache: CacheService,
        settings: Settings,
        metrics: "MetricsCollector | None" = None,
        clock: Callable[[], float] = time.perf_counter,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._pool = pool
        self._cache = cache
        self._metrics_collector = metrics
        self._clock = clock
        self._sleep = sleep
        self._slow_threshold_ms = settings.database.DB_SLOW_QUERY_THRESHOLD_MS
        self._metrics: deque[QueryPerformanceMetric] = deque(
            maxlen=settings.database.DB_METRICS_HISTORY
        )

    @property
    def raw_pool(self) -> DatabasePool:
        return self._pool

    # -------------------------------------------------------------------------
    # Metering
    # -------------------------------------------------------------------------

    def _elapsed_ms(self, start: float) -> float:
        return (self._clock() - start) * 1000

    def _record(self, text: str, execution_time: float, row_count: int, cache_hit: bool) -> None:
        """
        STAGE-POOL.3: Metric recording (ring buffer drops the oldest entry)
        """
        self._metrics.append(
            QueryPerformanceMetric(
                query=text[:QUERY_METRIC_TEXT_LENGTH],
                execution_time=execution_time,
                row_count=row_count,
                cache_hit=cache_hit,
            )
        )
        if self._metrics_collector:
            self._metrics_collector.record_query(execution_time / 1000, cache_hit=cache_hit)

    def _check_slow(self, text: str, execution_time: float, failed: bool = False) -> None:
        if execution_time <= self._slow_threshold_ms:
            return
        logger.warning(
            "Slow query detected",
            stage="POOL.3",
            query=text[:QUERY_LOG_TEXT_LENGTH],
            execution_time_ms=round(execution_time, 2),
            threshold_ms=self._slow_threshold_ms,
            failed=failed,
        )
        if self._metrics_collector:
            self._metrics_collector.record_slow_query()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def query(
        self,
        text: str,
        params: Sequence[Any] | None = None,
        cache: QueryCacheOptions | None = None,
    ) -> list[Row]:
        """
        Execute a statement, consulting the cache first when asked to.

        STAGE-POOL.1 / POOL.2

        A cache hit returns without touching the database. On a miss the
        rows are cached under cache.key. Execution errors propagate.
        """
        start = self._clock()

        if cache is not None:
            cached = await self._cache.get(cache.key, parse_json=True)
            if cached is not None:
                elapsed = self._elapsed_ms(start)
                self._record(text, elapsed, row_count=0, cache_hit=True)
                logger.debug("Query served from cache", stage="POOL.1", cache_key=cache.key)
                return cached

        try:
            rows = await self._pool.query(text, params)
        except Exception as e:
            elapsed = self._elapsed_ms(start)
            logger.error(
                "Query failed",
                stage="POOL.2",
                query=text[:QUERY_LOG_TEXT_LENGTH],
                error=str(e),
                error_type=type(e).__name__,
                execution_time_ms=round(elapsed, 2),
            )
            self._check_slow(text, elapsed, failed=True)
            if self._metrics_collector:
                self._metrics_collector.record_query(elapsed / 1000, cache_hit=False, error=True)
            raise

        elapsed = self._elapsed_ms(start)

        if cache is not None and rows is not None:
            await self._cache.set(cache.key, rows, ttl=cache.ttl)

        self._record(text, elapsed, row_count=len(rows), cache_hit=False)
        self._check_slow(text, elapsed)
        return rows

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Query attempt failed, retrying",
            stage="POOL.4",
            attempt=retry_state.attempt_number,
            delay_ms=round(retry_state.next_action.sleep * 1000, 1) if retry_state.next_action else None,
            error=str(error),
        )

    async def query_with_retry(
        self,
        text: str,
        params: Sequence[Any] | None = None,
        max_retries: int = 3,
        backoff_ms: float = 100,
        cache: QueryCacheOptions | None = None,
    ) -> list[Row]:
        """
        query() with exponential backoff: backoff * 2^(attempt-1) + U(0, 100ms).

        STAGE-POOL.4: Retry

        Every exception is retried; the last one is re-raised once
        max_retries attempts are used up.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, max_retries)),
            wait=wait_exponential_jitter(initial=backoff_ms / 1000, jitter=RETRY_JITTER_SECONDS),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self.query(text, params, cache)
        except Exception as e:
            logger.error(
                "Query failed after retries",
                stage="POOL.4",
                query=text[:QUERY_LOG_TEXT_LENGTH],
                attempts=max_retries,
                error=str(e),
            )
            raise

    async def _rollback(self, connection: PooledConnection) -> None:
        try:
            await connection.query("ROLLBACK")
        except Exception as e:
            logger.error("Rollback failed", stage="POOL.5", error=str(e))

    async def transaction(
        self,
        callback: Callable[[PooledConnection], Awaitable[T]],
        max_retries: int = 2,
    ) -> T:
        """
        Run callback inside BEGIN/COMMIT on a dedicated connection.

        STAGE-POOL.5: Transactions

        Each attempt uses a fresh connection. A failure rolls back, waits
        50 ms and retries; the final failure propagates. The connection is
        released after every attempt.
        """
        attempts = max(1, max_retries)
        for attempt in range(1, attempts + 1):
            connection = await self._pool.connect()
            try:
                await connection.query("BEGIN")
                result = await callback(connection)
                await connection.query("COMMIT")
                return result
            except Exception as e:
                await self._rollback(connection)
                if attempt >= attempts:
                    logger.error(
                        "Transaction failed",
                        stage="POOL.5",
                        attempts=attempts,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise
                logger.warning(
                    "Transaction attempt failed, retrying",
                    stage="POOL.5",
                    attempt=attempt,
                    error=str(e),
                )
                await self._sleep(TRANSACTION_RETRY_DELAY_SECONDS)
            finally:
                await connection.release()

    # -------------------------------------------------------------------------
    # Read views
    # -------------------------------------------------------------------------

    def get_performance_metrics(self, limit: int = 100) -> list[QueryPerformanceMetric]:
        """Most recent first."""
        ordered = sorted(reversed(self._metrics), key=lambda m: m.timestamp, reverse=True)
        return ordered[:limit]

    def get_slow_queries(self, threshold_ms: float = 1000, limit: int = 50) -> list[QueryPerformanceMetric]:
        """Queries above threshold_ms, slowest first."""
        slow = [m for m in self._metrics if m.execution_time > threshold_ms]
        slow.sort(key=lambda m: m.execution_time, reverse=True)
        return slow[:limit]

    def clear_metrics(self) -> None:
        self._metrics.clear()
        logger.info("Query metrics cleared", stage="POOL.3")

    def get_stats(self) -> ConnectionPoolStats:
        total = self._pool.total_count
        idle = self._pool.idle_count
        timings = [m.execution_time for m in self._metrics]
        return ConnectionPoolStats(
            total_count=total,
            idle_count=idle,
            waiting_count=self._pool.waiting_count,
            active_count=total - idle,
            total_connections=total,
            average_acquisition_time=sum(timings) / len(timings) if timings else 0.0,
            last_acquisition_time=timings[-1] if timings else 0.0,
        )

    async def health_check(self) -> bool:
        """
        STAGE-POOL.6: SELECT 1 probe; never raises.
        """
        try:
            await self.query(HEALTH_CHECK_QUERY)
            return True
        except Exception as e:
            logger.warning("Database health check failed", stage="POOL.6", error=str(e))
            return False

    async def close(self) -> None:
        await self._pool.close()
