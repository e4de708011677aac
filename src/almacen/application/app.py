"""
FastAPI Application Entry Point

Builds the HTTP surface of the backend core: health and admin routers,
Prometheus scrape endpoint, error handling, request correlation and request
metrics. CRUD routers mount on the same app and opt into response caching
through add_response_cache_middleware().

Author: Almacen Platform Team
Date: 2025-12-15
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from almacen.application.api.dependencies import MetricsCollectorDep, SettingsDep
from almacen.application.api.middleware.error_handler import add_error_handling_middleware
from almacen.application.api.middleware.request_id import RequestIdMiddleware
from almacen.application.api.middleware.request_metrics import RequestMetricsMiddleware
from almacen.application.api.routes import admin_router, health_router
from almacen.application.container import ServiceContainer, build_services, shutdown_services
from almacen.core.config.constants import HEADER_REQUEST_ID, HEADER_RESPONSE_TIME
from almacen.core.config.settings import Settings, get_settings
from almacen.core.exceptions import AlmacenError
from almacen.core.logging.logger import get_logger, get_request_id, setup_logging

logger = get_logger(__name__)


# ============================================================================
# Application Lifespan
# ============================================================================


def _lifespan(settings: Settings, injected: ServiceContainer | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: build (or adopt) the service container, start background
        tasks. Shutdown: stop them and close what this app built.
        """
        logger.info(
            "Starting Almacen backend",
            stage="APP.0",
            environment=settings.app.ENVIRONMENT,
            version=settings.app.APP_VERSION,
        )

        services = injected or await build_services(settings)
        app.state.services = services
        services.start_background_tasks()
        logger.info("Application startup complete", stage="APP.0")

        try:
            yield
        finally:
            logger.info("Shutting down application", stage="APP.9")
            if injected is None:
                await shutdown_services(services)
            else:
                await services.metrics_service.stop()
            logger.info("Application shutdown complete", stage="APP.9")

    return lifespan


# ============================================================================
# Application Factory
# ============================================================================


def create_app(services: ServiceContainer | None = None, settings: Settings | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        services: Pre-built container (tests, embedding). When omitted the
            lifespan builds one from settings and owns its shutdown.
        settings: Application settings (defaults to the container's, then
            get_settings())

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or (services.settings if services else None) or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title=settings.app.APP_NAME,
        version=settings.app.APP_VERSION,
        description="Inventory backend core: caching, connection pooling and health reporting",
        lifespan=_lifespan(settings, services),
        docs_url="/docs",
        redoc_url="/redoc",
    )
    if services is not None:
        app.state.services = services

    # ========================================================================
    # MIDDLEWARE REGISTRATION
    # ========================================================================
    # Last added runs first, so registration is innermost -> outermost:
    # CORS, request metrics, request id, error handling.

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.app.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[HEADER_REQUEST_ID, HEADER_RESPONSE_TIME, "X-Cache", "X-Cache-Key"],
    )
    app.add_middleware(
        RequestMetricsMiddleware, slow_threshold_ms=settings.app.SLOW_REQUEST_THRESHOLD_MS
    )
    app.add_middleware(RequestIdMiddleware)
    add_error_handling_middleware(app, include_traceback=settings.is_development)

    # ========================================================================
    # ROUTER REGISTRATION
    # ========================================================================

    base_path = settings.app.API_BASE_PATH
    app.include_router(health_router, prefix=base_path)
    app.include_router(admin_router, prefix=base_path)

    @app.get("/", tags=["Root"])
    async def root(app_settings: SettingsDep):
        return {
            "name": app_settings.app.APP_NAME,
            "version": app_settings.app.APP_VERSION,
            "environment": app_settings.app.ENVIRONMENT,
            "docs": "/docs",
            "health": f"{app_settings.app.API_BASE_PATH}/health",
        }

    @app.get("/metrics", tags=["Monitoring"])
    async def prometheus_metrics(collector: MetricsCollectorDep) -> Response:
        """Prometheus text exposition of the app's collector registry."""
        return Response(
            content=collector.get_prometheus_metrics(), media_type=collector.get_content_type()
        )

    @app.exception_handler(AlmacenError)
    async def almacen_exception_handler(request: Request, exc: AlmacenError):
        logger.error(
            f"Almacen exception: {exc.message}",
            error_type=type(exc).__name__,
            path=request.url.path,
            details=exc.details,
        )
        if exc.request_id is None:
            exc.request_id = get_request_id()
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers={HEADER_REQUEST_ID: exc.request_id or ""},
        )

    return app


# ============================================================================
# Main Entry Point
# ============================================================================


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "almacen.application.app:create_app",
        factory=True,
        host=settings.app.API_HOST,
        port=settings.app.API_PORT,
        reload=settings.is_development,
        log_level=settings.logging.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
