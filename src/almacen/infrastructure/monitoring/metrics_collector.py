"""
Metrics Collector with Prometheus Integration

Prometheus view of the cache and pool layers:
- Cache hit/miss counters (CacheService)
- Response cache HIT/MISS counters (ResponseCacheMiddleware)
- Query latency histogram, slow query and error counters (EnhancedConnectionPool)
- HTTP latency histogram (RequestMetricsMiddleware)
- Fired alert counter (MetricsService)
- Pool connection gauges (HealthService)

Each collector owns its CollectorRegistry so several app instances (tests,
workers) can coexist in one process without duplicate registration.

Author: Almacen Platform Team
Date: 2025-12-05
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from almacen.core.config.settings import Settings
from almacen.core.logging.logger import get_logger

logger = get_logger(__name__)

_QUERY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0)
_HTTP_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class MetricsCollector:
    """
    Centralized Prometheus metrics.

    STAGE-M: Metrics collection

    Usage:
        metrics = MetricsCollector(settings)
        metrics.record_cache_lookup(hit=True)
        metrics.record_query(0.012, cache_hit=False)
        body = metrics.get_prometheus_metrics()
    """

    def __init__(self, settings: Settings | None = None, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()

        self._cache_lookups = Counter(
            "almacen_cache_lookups_total", "Cache lookups by result", ["result"],
            registry=self.registry,
        )
        self._response_cache = Counter(
            "almacen_response_cache_total", "Response cache outcomes", ["result"],
            registry=self.registry,
        )
        self._query_duration = Histogram(
            "almacen_db_query_duration_seconds", "Pool query duration", ["cache_hit"],
            buckets=_QUERY_BUCKETS, registry=self.registry,
        )
        self._slow_queries = Counter(
            "almacen_db_slow_queries_total", "Queries above the slow threshold",
            registry=self.registry,
        )
        self._query_errors = Counter(
            "almacen_db_query_errors_total", "Failed pool queries",
            registry=self.registry,
        )
        self._http_duration = Histogram(
            "almacen_http_request_duration_seconds", "HTTP request duration",
            ["method", "endpoint", "status"], buckets=_HTTP_BUCKETS, registry=self.registry,
        )
        self._alerts = Counter(
            "almacen_alerts_fired_total", "Alert rule firings", ["rule", "severity"],
            registry=self.registry,
        )
        self._pool_connections = Gauge(
            "almacen_db_pool_connections", "Pool connections by state", ["state"],
            registry=self.registry,
        )

        if settings is not None:
            Info("almacen_app", "Application information", registry=self.registry).info({
                "version": settings.app.APP_VERSION,
                "environment": settings.app.ENVIRONMENT,
                "app_name": settings.app.APP_NAME,
            })

        logger.info("Metrics collector initialized", stage="M.0")

    # =========================================================================
    # Cache Metrics
    # =========================================================================

    def record_cache_lookup(self, hit: bool) -> None:
        self._cache_lookups.labels(result="hit" if hit else "miss").inc()

    def record_response_cache(self, result: str) -> None:
        """result is HIT or MISS."""
        self._response_cache.labels(result=result.lower()).inc()

    # =========================================================================
    # Database Metrics
    # =========================================================================

    def record_query(self, duration_seconds: float, cache_hit: bool, error: bool = False) -> None:
        self._query_duration.labels(cache_hit=str(cache_hit).lower()).observe(duration_seconds)
        if error:
            self._query_errors.inc()

    def record_slow_query(self) -> None:
        self._slow_queries.inc()

    def set_pool_connections(self, total: int, idle: int, waiting: int) -> None:
        self._pool_connections.labels(state="total").set(total)
        self._pool_connections.labels(state="idle").set(idle)
        self._pool_connections.labels(state="waiting").set(waiting)
        self._pool_connections.labels(state="active").set(max(total - idle, 0))

    # =========================================================================
    # HTTP and Alert Metrics
    # =========================================================================

    def record_http_request(
        self, method: str, endpoint: str, status_code: int, duration_seconds: float
    ) -> None:
        self._http_duration.labels(
            method=method, endpoint=endpoint, status=str(status_code)
        ).observe(duration_seconds)

    def record_alert(self, rule: str, severity: str) -> None:
        self._alerts.labels(rule=rule, severity=severity).inc()

    # =========================================================================
    # Export
    # =========================================================================

    def get_prometheus_metrics(self) -> bytes:
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST
