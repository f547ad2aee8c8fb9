"""
Health check endpoints for monitoring and orchestration.

``/health`` reports liveness only; ``/ready`` also probes the database.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from mpi.core.config import settings
from mpi.core.database import get_db_health


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    service: str
    version: str
    timestamp: datetime
    database: str | None = None


router = APIRouter(tags=["health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check endpoint",
)
async def health_check() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        service=settings.APP_NAME,
        version=settings.APP_VERSION,
        timestamp=datetime.now(timezone.utc),
    )


@router.get(
    "/ready",
    response_model=HealthResponse,
    summary="Readiness check endpoint",
    description="Returns 503 until the database answers.",
)
async def readiness_check(response: Response) -> HealthResponse:
    """
    Perform a readiness check against the database.

    Returns:
        HealthResponse: ready, or not_ready with a 503 status
    """
    db_health = await get_db_health()
    ready = db_health["status"] == "healthy"
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(
        status="ready" if ready else "not_ready",
        service=settings.APP_NAME,
        version=settings.APP_VERSION,
        timestamp=datetime.now(timezone.utc),
        database=db_health["database"],
    )
