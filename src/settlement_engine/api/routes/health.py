"""Health check endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from settlement_engine.api.dependencies import DbSession, Webhooks
from settlement_engine.database import ping

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    database: str


class ReadinessResponse(BaseModel):
    """Which providers can currently deliver webhooks."""

    status: str
    providers: list[str]


@router.get("/health", response_model=HealthResponse)
def health_check(db: DbSession) -> HealthResponse:
    """Report whether the settlement store answers."""
    try:
        database = "healthy" if ping(db) else "unhealthy"
    except SQLAlchemyError as e:
        logger.warning("Database health check failed: %s", e)
        database = "unhealthy"

    return HealthResponse(
        status="healthy" if database == "healthy" else "degraded",
        timestamp=datetime.now(timezone.utc),
        database=database,
    )


@router.get("/ready", response_model=ReadinessResponse)
def readiness_check(webhooks: Webhooks, response: Response) -> ReadinessResponse:
    """Ready once at least one provider has a webhook adapter."""
    providers = webhooks.providers
    if not providers:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return ReadinessResponse(status="no_providers", providers=[])
    return ReadinessResponse(status="ready", providers=providers)


@router.get("/live")
def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
