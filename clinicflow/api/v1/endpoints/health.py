"""Health check endpoints."""

from fastapi import APIRouter, status
from pydantic import BaseModel

from clinicflow.core.redis_client import check_redis_connection
from clinicflow.database import check_database_connection
from clinicflow.dependencies import Container

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    environment: str


class DetailedHealthResponse(BaseModel):
    """Detailed health check response model."""

    status: str
    version: str
    environment: str
    database: str
    redis: str
    push_connections: int
    pending_post_commit_hooks: int


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Basic health check",
)
async def health_check(container: Container) -> HealthResponse:
    """
    Basic health check endpoint.

    Returns:
        Basic health status
    """
    return HealthResponse(
        status="healthy",
        version=container.settings.app_version,
        environment=container.settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Detailed health check",
)
async def detailed_health_check(container: Container) -> DetailedHealthResponse:
    """
    Detailed health check with database and Redis status.

    Returns:
        Detailed health status including dependencies and pipeline gauges
    """
    db_healthy = await check_database_connection(container.engine)
    redis_healthy = await check_redis_connection(container.redis)

    return DetailedHealthResponse(
        status="healthy" if db_healthy and redis_healthy else "degraded",
        version=container.settings.app_version,
        environment=container.settings.environment,
        database="healthy" if db_healthy else "unhealthy",
        redis="healthy" if redis_healthy else "unhealthy",
        push_connections=container.gateway.registry.connection_count,
        pending_post_commit_hooks=container.hooks.pending,
    )


@router.get(
    "/ping",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Simple ping",
)
async def ping() -> dict[str, str]:
    """
    Simple ping endpoint.

    Returns:
        Pong response
    """
    return {"message": "pong"}
