"""
Health Checker Module

Aggregates the health of the backend core into a single verdict:
- Database pool (probe + connection utilization)
- Cache (probe + hit rate)
- Process memory (psutil)

The overall status is the worst of the three components. The service also
keeps process-lifetime request counters (fed by RequestMetricsMiddleware)
for the system metrics report.

Author: Almacen Platform Team
Date: 2025-12-10
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import psutil

from almacen.core.config.constants import HealthStatus
from almacen.core.config.settings import Settings
from almacen.core.logging.logger import get_logger
from almacen.infrastructure.cache.cache_service import CacheService
from almacen.infrastructure.database.connection_pool import EnhancedConnectionPool

if TYPE_CHECKING:
    from almacen.infrastructure.monitoring.metrics_collector import MetricsCollector

logger = get_logger(__name__)

_MB = 1024 * 1024


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus
    response_time: float
    details: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "responseTime": round(self.response_time, 2),
        }
        if self.details is not None:
            data["details"] = self.details
        if self.error is not None:
            data["error"] = self.error
        return data


def worst_status(statuses: list[HealthStatus]) -> HealthStatus:
    """unhealthy beats degraded beats healthy; an empty list is healthy."""
    return max(statuses, key=lambda s: s.severity, default=HealthStatus.HEALTHY)


def _process_memory_percent() -> float:
    return psutil.Process().memory_percent()


class HealthService:
    """
    Health and system metrics reporter.

    STAGE-HEALTH: Health check orchestration

    Usage:
        health = HealthService(pool, cache, settings)
        report = await health.get_health_status()
        ready = await health.readiness()
        health.record_request(12.5, is_error=False)
    """

    def __init__(
        self,
        pool: EnhancedConnectionPool,
        cache: CacheService,
        settings: Settings,
        metrics: "MetricsCollector | None" = None,
        memory_probe: Callable[[], float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._pool = pool
        self._cache = cache
        self._metrics = metrics
        self._thresholds = settings.monitoring
        self._version = settings.app.APP_VERSION
        self._memory_probe = memory_probe or _process_memory_percent
        self._clock = clock
        self._started = clock()

        self._requests_total = 0
        self._requests_errors = 0
        self._requests_response_time = 0.0

        logger.info("Health service initialized", stage="HEALTH.0", version=self._version)

    # -------------------------------------------------------------------------
    # Request counters
    # -------------------------------------------------------------------------

    def record_request(self, response_time_ms: float, is_error: bool = False) -> None:
        self._requests_total += 1
        self._requests_response_time += response_time_ms
        if is_error:
            self._requests_errors += 1

    @property
    def uptime_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)

    # -------------------------------------------------------------------------
    # Component checks
    # -------------------------------------------------------------------------

    async def _timed(
        self, name: str, check: Callable[[], Awaitable[ComponentHealth]]
    ) -> ComponentHealth:
        start = time.perf_counter()
        try:
            component = await check()
        except Exception as e:
            logger.warning(
                "Health check raised", stage="HEALTH.1", component=name, error=str(e)
            )
            component = ComponentHealth(
                name=name, status=HealthStatus.UNHEALTHY, response_time=0.0, error=str(e)
            )
        component.response_time = (time.perf_counter() - start) * 1000
        return component

    async def _database(self) -> ComponentHealth:
        healthy = await self._pool.health_check()
        stats = self._pool.get_stats()
        if self._metrics:
            self._metrics.set_pool_connections(
                stats.total_count, stats.idle_count, stats.waiting_count
            )

        if not healthy:
            return ComponentHealth(
                name="database", status=HealthStatus.UNHEALTHY, response_time=0.0,
                error="Database connection failed",
            )

        utilization = (
            stats.active_count / stats.total_connections * 100 if stats.total_connections else 0.0
        )
        status = (
            HealthStatus.DEGRADED
            if utilization > self._thresholds.HEALTH_DB_UTILIZATION_DEGRADED
            else HealthStatus.HEALTHY
        )
        return ComponentHealth(
            name="database",
            status=status,
            response_time=0.0,
            details={
                "totalConnections": stats.total_connections,
                "activeConnections": stats.active_count,
                "idleConnections": stats.idle_count,
                "waitingConnections": stats.waiting_count,
                "connectionUtilization": round(utilization),
            },
        )

    async def _cache_component(self) -> ComponentHealth:
        healthy = await self._cache.health_check()
        stats = await self._cache.get_stats()

        if not healthy:
            return ComponentHealth(
                name="cache", status=HealthStatus.UNHEALTHY, response_time=0.0,
                error="Cache connection failed",
            )

        status = (
            HealthStatus.DEGRADED
            if stats.hit_rate < self._thresholds.HEALTH_CACHE_HIT_RATE_DEGRADED
            else HealthStatus.HEALTHY
        )
        return ComponentHealth(
            name="cache",
            status=status,
            response_time=0.0,
            details={
                "hitRate": stats.hit_rate,
                "totalKeys": stats.total_keys,
                "memoryUsage": stats.memory_usage,
                "hits": stats.hits,
                "misses": stats.misses,
            },
        )

    async def check_database(self) -> ComponentHealth:
        """STAGE-HEALTH.1: Database component"""
        return await self._timed("database", self._database)

    async def check_cache(self) -> ComponentHealth:
        """STAGE-HEALTH.2: Cache component"""
        return await self._timed("cache", self._cache_component)

    def check_memory(self) -> ComponentHealth:
        """
        STAGE-HEALTH.3: Memory component

        Percentage of system memory held by this process.
        """
        try:
            percentage = self._memory_probe()
        except Exception as e:
            return ComponentHealth(
                name="memory", status=HealthStatus.UNHEALTHY, response_time=0.0, error=str(e)
            )

        if percentage > self._thresholds.HEALTH_MEMORY_UNHEALTHY:
            status = HealthStatus.UNHEALTHY
        elif percentage > self._thresholds.HEALTH_MEMORY_DEGRADED:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        details: dict[str, Any] = {"percentage": round(percentage, 2)}
        try:
            info = psutil.Process().memory_info()
            details["rss"] = round(info.rss / _MB)
            details["vms"] = round(info.vms / _MB)
        except psutil.Error:
            pass
        return ComponentHealth(name="memory", status=status, response_time=0.0, details=details)

    # -------------------------------------------------------------------------
    # Reports
    # -------------------------------------------------------------------------

    async def get_health_status(self) -> dict[str, Any]:
        """
        Full health report; the overall status is the worst component.

        STAGE-HEALTH.4: Aggregation
        """
        try:
            components = [
                await self.check_database(),
                await self.check_cache(),
                self.check_memory(),
            ]
        except Exception as e:
            logger.error("Health check failed", stage="HEALTH.4", error=str(e))
            return {
                "status": HealthStatus.UNHEALTHY.value,
                "timestamp": utc_timestamp(),
                "error": str(e),
            }

        overall = worst_status([c.status for c in components])
        if overall is not HealthStatus.HEALTHY:
            logger.warning(
                "System health degraded",
                stage="HEALTH.4",
                status=overall.value,
                components={c.name: c.status.value for c in components},
            )

        return {
            "status": overall.value,
            "timestamp": utc_timestamp(),
            "components": [c.to_dict() for c in components],
            "uptime": self.uptime_ms,
            "version": self._version,
        }

    async def readiness(self) -> dict[str, Any]:
        """Ready unless the database or the cache is unhealthy."""
        database = await self.check_database()
        cache = await self.check_cache()
        ready = (
            database.status is not HealthStatus.UNHEALTHY
            and cache.status is not HealthStatus.UNHEALTHY
        )
        return {
            "ready": ready,
            "checks": {"database": database.status.value, "cache": cache.status.value},
        }

    def liveness(self) -> dict[str, Any]:
        return {"alive": True, "timestamp": utc_timestamp(), "uptime": self.uptime_ms}

    # -------------------------------------------------------------------------
    # System metrics
    # -------------------------------------------------------------------------

    def _memory_metrics(self) -> dict[str, Any]:
        process = psutil.Process()
        info = process.memory_info()
        system = psutil.virtual_memory()
        return {
            "used": info.rss,
            "total": system.total,
            "percentage": round(process.memory_percent(), 2),
            "rss": info.rss,
            "vms": info.vms,
        }

    @staticmethod
    def _cpu_metrics() -> dict[str, Any]:
        try:
            load_average = list(psutil.getloadavg())
        except (AttributeError, OSError):
            load_average = [0.0, 0.0, 0.0]
        return {
            "usage": psutil.Process().cpu_percent(interval=None),
            "loadAverage": load_average,
        }

    def _request_metrics(self) -> dict[str, Any]:
        total = self._requests_total
        uptime_s = max(self.uptime_ms / 1000, 1e-9)
        return {
            "total": total,
            "errors": self._requests_errors,
            "errorRate": round(self._requests_errors / total * 100, 2) if total else 0.0,
            "rate": total / uptime_s,
            "averageResponseTime": self._requests_response_time / total if total else 0.0,
        }

    async def _performance_metrics(self) -> dict[str, Any]:
        try:
            cache_stats = await self._cache.get_stats()
            pool_stats = self._pool.get_stats()
            slow_queries = self._pool.get_slow_queries(threshold_ms=1000, limit=100)
        except Exception as e:
            logger.warning("Failed to collect performance metrics", stage="HEALTH.5", error=str(e))
            return {"cacheHitRate": 0, "dbConnections": 0, "slowQueries": 0, "averageQueryTime": 0}

        return {
            "cacheHitRate": cache_stats.hit_rate,
            "dbConnections": pool_stats.total_connections,
            "slowQueries": len(slow_queries),
            "averageQueryTime": round(pool_stats.average_acquisition_time, 3),
        }

    async def get_system_metrics(self) -> dict[str, Any]:
        """
        STAGE-HEALTH.5: System metrics (memory, CPU, requests, performance)
        """
        return {
            "timestamp": utc_timestamp(),
            "uptime": self.uptime_ms,
            "memory": self._memory_metrics(),
            "cpu": self._cpu_metrics(),
            "requests": self._request_metrics(),
            "performance": await self._performance_metrics(),
        }
