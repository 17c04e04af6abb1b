"""Health check router."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ..core.clock import utcnow
from ..core.config import settings
from ..core.database import check_db
from ..schemas.health import HealthResponse, HealthStatus, ReadinessResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/health", tags=["health"])

probe_router = APIRouter(tags=["Health"])


@router.post("/ping", response_model=HealthResponse)
async def health_ping() -> JSONResponse:
    """
    Health check endpoint.

    Returns current service status and timestamp.
    """
    response_data = HealthResponse(
        status=HealthStatus.HEALTHY,
        timestamp=utcnow(),
        version="1.0.0"
    )

    logger.debug(
        "Health check requested",
        extra={
            "status": response_data.status,
            "timestamp": response_data.timestamp.isoformat()
        }
    )

    return JSONResponse(
        status_code=200,
        content=response_data.model_dump(mode="json")
    )


@probe_router.get("/health", summary="Health Check")
async def health_check() -> dict:
    """Liveness probe: the process is up and serving requests."""
    return {
        "status": HealthStatus.HEALTHY.value,
        "service": "vehicle-reservation-engine",
        "version": "1.0.0",
        "environment": settings.environment,
    }


@probe_router.get("/ready", response_model=ReadinessResponse, summary="Readiness Check")
async def readiness_check() -> JSONResponse:
    """Readiness probe: the database answers queries."""
    checks = {}
    try:
        await check_db()
        checks["database"] = "ok"
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Readiness check failed", extra={"dependency": "database", "error": str(exc)})
        checks["database"] = "unavailable"

    ready = all(result == "ok" for result in checks.values())
    body = ReadinessResponse(status=HealthStatus.HEALTHY if ready else HealthStatus.DEGRADED, checks=checks)
    return JSONResponse(status_code=200 if ready else 503, content=body.model_dump(mode="json"))
