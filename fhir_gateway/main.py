"""
Main FastAPI application
"""

import uvicorn
from fastapi import FastAPI
from fhir_gateway.api import fhir_resources, health, metrics, patient_merge
from fhir_gateway.core.config import settings
from fhir_gateway.core.database import init_db
from fhir_gateway.core.logging import configure_logging, get_logger
from fhir_gateway.core.middleware import MetricsMiddleware, RequestTracingMiddleware
from fhir_gateway.integrations.fhir import FHIRError, fhir_error_handler
from fhir_gateway.services.subscription_lifecycle import build_subscription_lifecycle

# Configure structured logging
configure_logging()
logger = get_logger(__name__)


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    description="""
    FHIR R4 Subscription Gateway

    ## Features
    - Subscription handshake before activation (rest-hook)
    - Periodic heartbeat notifications per Subscription
    - Topic-based event notifications
    - Patient $patient-merge operation
    - Prometheus metrics and structured logging with correlation IDs
    """,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_exception_handler(FHIRError, fhir_error_handler)

# Request tracing (correlation IDs)
app.add_middleware(RequestTracingMiddleware)

# Prometheus request metrics
app.add_middleware(MetricsMiddleware)

app.include_router(health.router, tags=["health"])
app.include_router(metrics.router)
# Operations before the generic /fhir/{type}/{id} routes
app.include_router(patient_merge.router)
app.include_router(fhir_resources.router)


@app.on_event("startup")
async def startup_event():
    """Application startup tasks"""
    logger.info(
        "application_startup",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        debug=settings.DEBUG,
    )

    init_db()

    lifecycle = getattr(app.state, "subscription_lifecycle", None)
    if lifecycle is None:
        lifecycle = build_subscription_lifecycle()
        app.state.subscription_lifecycle = lifecycle

    heartbeat = settings.HEARTBEAT_ENABLED and settings.ENVIRONMENT != "test"
    await lifecycle.start(heartbeat=heartbeat)


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown tasks"""
    logger.info(
        "application_shutdown",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
    )

    lifecycle = getattr(app.state, "subscription_lifecycle", None)
    if lifecycle:
        await lifecycle.stop()
        app.state.subscription_lifecycle = None


if __name__ == "__main__":
    uvicorn.run(
        "fhir_gateway.main:app",
        host="0.0.0.0",  # nosec B104
        port=8000,
        reload=settings.DEBUG,
    )
