"""Health check endpoints for container orchestration."""

from typing import Any

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse

from serenity_crisis.database import check_database_connection
from serenity_crisis.services.scheduler import get_scheduler
from serenity_crisis.services.sms_gateway import is_simulated

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=None)
async def health_check() -> Response:
    """
    Health check endpoint with dependency status.

    Returns:
        {"status": "healthy", "database": "connected", ...} when operational
        {"status": "degraded", "database": "disconnected", ...} when the
        database is unavailable

    ``sms`` reports ``simulated`` when no SMS provider is configured and
    ``sweep`` whether the escalation deadline sweep is running here.
    """
    db_connected = await check_database_connection()
    details = {
        "sms": "simulated" if is_simulated() else "live",
        "sweep": "running" if get_scheduler() is not None else "stopped",
    }

    if db_connected:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "healthy", "database": "connected", **details},
        )
    else:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "degraded", "database": "disconnected", **details},
        )


@router.get("/health/live")
async def liveness_probe() -> dict[str, Any]:
    """
    Kubernetes liveness probe.

    Returns success if the application process is running.
    Does not check the database.
    """
    return {"status": "alive"}


@router.get("/health/ready", response_model=None)
async def readiness_probe() -> Response:
    """
    Kubernetes readiness probe.

    A crisis service without its database cannot record alerts, so
    readiness follows database connectivity.
    """
    db_connected = await check_database_connection()

    if db_connected:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "status": "ready",
                "database": "connected",
            },
        )
    else:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "database": "disconnected",
            },
        )
