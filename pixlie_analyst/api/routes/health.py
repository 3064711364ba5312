"""
Health check endpoints for monitoring service status.
"""

import time

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from pixlie_analyst.models.contracts import HealthCheck, utcnow

router = APIRouter()


@router.get("/health", response_model=HealthCheck)
async def health_check(request: Request) -> HealthCheck:
    """
    Check the health status of the service.

    Returns:
        HealthCheck: Service health information
    """
    from pixlie_analyst.api.app import app_start_time

    coordinator = request.app.state.coordinator
    dependencies = {
        "coordinator": "healthy" if coordinator is not None else "unavailable",
    }
    if coordinator is not None:
        dependencies["tools"] = f"{len(coordinator.registry)} registered"
        dependencies["llm_providers"] = ",".join(coordinator.chain.names)

    return HealthCheck(
        status="healthy" if coordinator is not None else "degraded",
        timestamp=utcnow(),
        version=request.app.state.settings.app_version,
        uptime_seconds=time.time() - app_start_time,
        dependencies=dependencies,
    )


@router.get("/ready")
async def readiness_check(request: Request):
    """Ready once the coordinator exists and the tool registry is frozen."""
    coordinator = request.app.state.coordinator
    ready = coordinator is not None and coordinator.registry.frozen
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "not_ready", "timestamp": utcnow().isoformat()},
    )
