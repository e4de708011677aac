"""
Service Container

Explicit construction of every long-lived service at startup, in dependency
order, and orderly teardown in reverse order:

    Settings
      -> MetricsCollector (Prometheus registry)
      -> CacheStore (redis | memory) -> CacheService
      -> DatabasePool (postgres | memory) -> EnhancedConnectionPool
      -> HealthService, MetricsService

The container is stored on app.state.services and handed to routes through
FastAPI dependencies and to middleware through constructors.

Author: Almacen Platform Team
Date: 2025-12-12
"""

from dataclasses import dataclass

from almacen.core.config.settings import Settings
from almacen.core.exceptions import DatabaseConnectionError
from almacen.core.logging.logger import get_logger
from almacen.infrastructure.cache import CacheService, create_cache_store
from almacen.infrastructure.database import EnhancedConnectionPool, create_database_pool
from almacen.infrastructure.monitoring import HealthService, MetricsCollector, MetricsService

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    metrics: MetricsCollector
    cache: CacheService
    pool: EnhancedConnectionPool
    health: HealthService
    metrics_service: MetricsService

    def start_background_tasks(self) -> None:
        """Redis health monitor and periodic metrics cleanup."""
        self.cache.store.start_health_monitor()
        self.metrics_service.start_cleanup_task()


def wire_services(
    settings: Settings,
    cache: CacheService,
    pool: EnhancedConnectionPool,
    metrics: MetricsCollector,
) -> ServiceContainer:
    """Build the reporting services on top of already constructed cache and pool."""
    return ServiceContainer(
        settings=settings,
        metrics=metrics,
        cache=cache,
        pool=pool,
        health=HealthService(pool, cache, settings, metrics=metrics),
        metrics_service=MetricsService(settings, metrics=metrics),
    )


async def build_services(settings: Settings) -> ServiceContainer:
    """
    Construct and connect every service.

    Neither backend failing to connect aborts startup: the cache store
    starts unhealthy and reconnects through its health monitor, the
    database pool failure is logged and reported by the health endpoints
    until a later checkout manages to open it.
    """
    metrics = MetricsCollector(settings)

    store = create_cache_store(settings)
    if await store.connect():
        logger.info("Cache store connected", stage="APP.1", backend=settings.redis.CACHE_BACKEND)
    else:
        logger.warning(
            "Cache store unavailable, starting degraded",
            stage="APP.1",
            backend=settings.redis.CACHE_BACKEND,
        )
    cache = CacheService(store, settings, metrics=metrics)

    raw_pool = create_database_pool(settings)
    try:
        await raw_pool.open()
    except DatabaseConnectionError as e:
        logger.error(
            "Database pool unavailable, starting unhealthy",
            stage="APP.2",
            backend=settings.database.DATABASE_BACKEND,
            error=e.message,
        )
    pool = EnhancedConnectionPool(raw_pool, cache, settings, metrics=metrics)

    return wire_services(settings, cache, pool, metrics)


async def shutdown_services(services: ServiceContainer) -> None:
    """Stop background work, then close the pool and the cache store."""
    await services.metrics_service.stop()
    try:
        await services.pool.close()
    except Exception as e:
        logger.error("Failed to close database pool", stage="APP.9", error=str(e))
    await services.cache.disconnect()
    logger.info("Services shut down", stage="APP.9")
