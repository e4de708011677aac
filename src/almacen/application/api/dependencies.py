"""
FastAPI Dependency Injection Module
===================================

Route handlers never construct services or reach for module globals. The
lifespan builds a ServiceContainer once and stores it on ``app.state``;
these providers hand its members to handlers:

    @router.get("/cache/stats")
    async def cache_stats(cache: CacheDep):
        return (await cache.get_stats()).to_dict()

In tests, pass a pre-built container to ``create_app(services=...)`` and
every route sees the injected fakes.
"""

from typing import Annotated

from fastapi import Depends, Request

from almacen.application.container import ServiceContainer
from almacen.core.config.settings import Settings
from almacen.infrastructure.cache.cache_service import CacheService
from almacen.infrastructure.database.connection_pool import EnhancedConnectionPool
from almacen.infrastructure.monitoring.health_checker import HealthService
from almacen.infrastructure.monitoring.metrics_collector import MetricsCollector
from almacen.infrastructure.monitoring.metrics_service import MetricsService


def get_services(request: Request) -> ServiceContainer:
    """
    Retrieve the ServiceContainer from application state.

    Raises:
        RuntimeError: If the lifespan startup did not complete
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError(
            "ServiceContainer not initialized in app.state. "
            "This indicates the application lifespan startup didn't complete properly."
        )
    return services


ServicesDep = Annotated[ServiceContainer, Depends(get_services)]


def get_app_settings(services: ServicesDep) -> Settings:
    return services.settings


def get_cache(services: ServicesDep) -> CacheService:
    return services.cache


def get_pool(services: ServicesDep) -> EnhancedConnectionPool:
    return services.pool


def get_health_service(services: ServicesDep) -> HealthService:
    return services.health


def get_metrics_service(services: ServicesDep) -> MetricsService:
    return services.metrics_service


def get_metrics_collector(services: ServicesDep) -> MetricsCollector:
    return services.metrics


# ============================================================================
# TYPE ALIASES FOR CLEANER ROUTE SIGNATURES
# ============================================================================

SettingsDep = Annotated[Settings, Depends(get_app_settings)]
CacheDep = Annotated[CacheService, Depends(get_cache)]
PoolDep = Annotated[EnhancedConnectionPool, Depends(get_pool)]
HealthDep = Annotated[HealthService, Depends(get_health_service)]
MetricsServiceDep = Annotated[MetricsService, Depends(get_metrics_service)]
MetricsCollectorDep = Annotated[MetricsCollector, Depends(get_metrics_collector)]
