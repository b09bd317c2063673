"""
Health check endpoints
"""

import time
from typing import Dict

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from fhir_gateway.core.config import settings
from fhir_gateway.core.database import check_database_connection
from fhir_gateway.core.logging import get_logger
from pydantic import BaseModel

router = APIRouter()
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response model"""

    status: str
    version: str
    timestamp: float


class ReadinessResponse(BaseModel):
    """Readiness check response model"""

    status: str
    checks: Dict[str, bool]
    timestamp: float


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint
    Returns 200 if the service is running
    """
    logger.debug("health_check_requested")
    return HealthResponse(
        status="healthy",
        version=settings.APP_VERSION,
        timestamp=time.time(),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request):
    """
    Readiness check endpoint
    Verifies database connectivity and that the subscription lifecycle is wired.
    Returns 200 if ready, 503 otherwise
    """
    logger.debug("readiness_check_requested")

    checks = {
        "database": check_database_connection(),
        "subscription_lifecycle": getattr(request.app.state, "subscription_lifecycle", None) is not None,
    }

    all_ready = all(checks.values())
    response_status = status.HTTP_200_OK if all_ready else status.HTTP_503_SERVICE_UNAVAILABLE

    if not all_ready:
        logger.warning("readiness_check_failed", checks=checks)

    return JSONResponse(
        status_code=response_status,
        content={
            "status": "ready" if all_ready else "not_ready",
            "checks": checks,
            "timestamp": time.time(),
        },
    )
