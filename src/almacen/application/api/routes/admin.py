"""
Admin Routes
============

Operational endpoints for the cache, the database pool and the request
metrics service. Typical consumers are dashboards, on-call engineers
clearing stale cache entries after a data fix, and external monitoring that
pulls the JSON export.

Cache:
    GET    /admin/cache/stats
    POST   /admin/cache/invalidate
    DELETE /admin/cache

Database:
    GET    /admin/database/stats
    GET    /admin/database/metrics
    GET    /admin/database/slow-queries
    DELETE /admin/database/metrics

Request metrics and alerts:
    GET    /admin/metrics/summary
    GET    /admin/metrics/requests
    GET    /admin/metrics/endpoints
    GET    /admin/metrics/export
    GET    /admin/alerts/rules
    PATCH  /admin/alerts/rules/{name}
    GET    /admin/alerts/recent
"""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Response, status

from almacen.application.api.dependencies import CacheDep, MetricsServiceDep, PoolDep
from almacen.application.api.models.admin import AlertToggleRequest, InvalidatePatternsRequest
from almacen.core.logging.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ============================================================================
# CACHE
# ============================================================================


@router.get("/cache/stats")
async def cache_stats(cache: CacheDep) -> dict:
    stats = await cache.get_stats()
    return {**stats.to_dict(), "healthy": cache.is_healthy}


@router.post("/cache/invalidate")
async def invalidate_cache(body: InvalidatePatternsRequest, cache: CacheDep) -> dict:
    """Clear every key matching any of the given glob patterns."""
    removed = await cache.invalidate_patterns(body.patterns)
    logger.info("Manual cache invalidation", stage="CACHE.3", patterns=body.patterns, keys=removed)
    return {"patterns": body.patterns, "keysRemoved": removed}


@router.delete("/cache")
async def flush_cache(cache: CacheDep) -> dict:
    """Flush the whole cache database and reset hit/miss counters."""
    flushed = await cache.flush_all()
    if not flushed:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cache flush failed")
    return {"flushed": True}


# ============================================================================
# DATABASE
# ============================================================================


@router.get("/database/stats")
async def database_stats(pool: PoolDep) -> dict:
    return pool.get_stats().to_dict()


@router.get("/database/metrics")
async def database_metrics(pool: PoolDep, limit: int = Query(default=100, ge=1, le=1000)) -> list[dict]:
    """Recorded query metrics, most recent first."""
    return [m.to_dict() for m in pool.get_performance_metrics(limit)]


@router.get("/database/slow-queries")
async def slow_queries(
    pool: PoolDep,
    threshold_ms: float = Query(default=1000, ge=0),
    limit: int = Query(default=50, ge=1, le=1000),
) -> list[dict]:
    """Recorded queries slower than threshold_ms, slowest first."""
    return [m.to_dict() for m in pool.get_slow_queries(threshold_ms, limit)]


@router.delete("/database/metrics")
async def clear_database_metrics(pool: PoolDep) -> dict:
    pool.clear_metrics()
    return {"cleared": True}


# ============================================================================
# REQUEST METRICS
# ============================================================================


@router.get("/metrics/summary")
async def metrics_summary(metrics: MetricsServiceDep) -> dict:
    return {"stats": metrics.get_stats(), "performance": metrics.get_performance_summary()}


@router.get("/metrics/requests")
async def request_metrics(
    metrics: MetricsServiceDep,
    method: str | None = None,
    url: str | None = None,
    status_code: int | None = None,
    errors_only: bool = False,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=10000),
) -> list[dict]:
    samples = metrics.get_request_metrics(
        method=method.upper() if method else None,
        url=url,
        status_code=status_code,
        errors_only=errors_only,
        start=start,
        end=end,
        limit=limit,
    )
    return [m.to_dict() for m in samples]


@router.get("/metrics/endpoints")
async def endpoint_metrics(metrics: MetricsServiceDep) -> list[dict]:
    return [m.to_dict() for m in metrics.get_all_endpoint_metrics()]


@router.get("/metrics/export")
async def export_metrics(metrics: MetricsServiceDep) -> Response:
    return Response(content=metrics.export_metrics(), media_type="application/json")


# ============================================================================
# ALERTS
# ============================================================================


@router.get("/alerts/rules")
async def alert_rules(metrics: MetricsServiceDep) -> list[dict]:
    return [rule.to_dict() for rule in metrics.get_alert_rules()]


@router.patch("/alerts/rules/{name}")
async def toggle_alert_rule(name: str, body: AlertToggleRequest, metrics: MetricsServiceDep) -> dict:
    if not metrics.toggle_alert_rule(name, body.enabled):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown alert rule '{name}'")
    return {"name": name, "enabled": body.enabled}


@router.get("/alerts/recent")
async def recent_alerts(
    metrics: MetricsServiceDep, limit: int = Query(default=50, ge=1, le=100)
) -> list[dict]:
    return [alert.to_dict() for alert in metrics.get_recent_alerts(limit)]
