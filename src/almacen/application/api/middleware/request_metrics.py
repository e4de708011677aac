"""
Request Metrics Middleware
==========================

Times every HTTP request and feeds the result to:

1. MetricsService: ring buffer, per-endpoint aggregates and alert rules
2. HealthService: process-lifetime request counters
3. MetricsCollector: Prometheus request duration histogram

Endpoints are aggregated by their route template (``/api/materials/{id}``)
when one matches, so path parameters do not explode the endpoint table.
Slow requests are logged at warning level and every response carries an
``X-Response-Time`` header in milliseconds.
"""

import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from almacen.core.config.constants import HEADER_RESPONSE_TIME
from almacen.core.logging.logger import get_logger
from almacen.infrastructure.monitoring.metrics_service import RequestMetrics

logger = get_logger(__name__)


def _endpoint(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestMetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware for request timing and analytics.

    Services are looked up on app.state.services per request, so the
    middleware can be registered before the lifespan has built them.
    """

    def __init__(self, app, slow_threshold_ms: float = 1000.0):
        super().__init__(app)
        self.slow_threshold_ms = slow_threshold_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        endpoint = _endpoint(request)
        is_error = response.status_code >= 400

        if duration_ms > self.slow_threshold_ms:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path}",
                stage="METRICS.1",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 2),
                threshold_ms=self.slow_threshold_ms,
            )

        services = getattr(request.app.state, "services", None)
        if services is not None:
            services.metrics_service.record_request(
                RequestMetrics(
                    method=request.method,
                    url=endpoint,
                    status_code=response.status_code,
                    response_time=duration_ms,
                    user_agent=request.headers.get("user-agent"),
                    ip=request.client.host if request.client else None,
                )
            )
            services.health.record_request(duration_ms, is_error=is_error)
            services.metrics.record_http_request(
                request.method, endpoint, response.status_code, duration_ms / 1000
            )

        response.headers[HEADER_RESPONSE_TIME] = f"{duration_ms:.2f}ms"
        return response
