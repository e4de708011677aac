"""
Health Check Routes
===================

Endpoints for load balancers, orchestrators and dashboards:

- GET /health          full report, 200 healthy/degraded, 503 unhealthy
- GET /health/ready    readiness probe (database and cache reachable)
- GET /health/live     liveness probe (always 200 while the process serves)
- GET /health/metrics  system metrics (memory, CPU, requests, performance)

Keep liveness trivial: a liveness failure restarts the container, while a
readiness failure only takes the instance out of rotation.
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from almacen.application.api.dependencies import HealthDep
from almacen.core.config.constants import HealthStatus
from almacen.core.logging.logger import get_logger
from almacen.infrastructure.monitoring.health_checker import utc_timestamp

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
async def health_check(health: HealthDep) -> JSONResponse:
    """
    Aggregated health of database, cache and memory.

    Degraded still answers 200: the instance can serve traffic, just not at
    full capacity.
    """
    try:
        report = await health.get_health_status()
    except Exception as e:
        logger.error("Health endpoint failed", stage="HEALTH.4", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": HealthStatus.UNHEALTHY.value,
                "timestamp": utc_timestamp(),
                "error": str(e),
            },
        )

    code = (
        status.HTTP_503_SERVICE_UNAVAILABLE
        if report["status"] == HealthStatus.UNHEALTHY.value
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=code, content=report)


@router.get("/ready")
async def readiness_check(health: HealthDep) -> JSONResponse:
    """Kubernetes readiness probe."""
    try:
        result = await health.readiness()
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"ready": False, "error": str(e)},
        )
    code = status.HTTP_200_OK if result["ready"] else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=result)


@router.get("/live")
async def liveness_check(health: HealthDep) -> dict:
    """Kubernetes liveness probe."""
    return health.liveness()


@router.get("/metrics")
async def system_metrics(health: HealthDep) -> dict:
    return await health.get_system_metrics()
