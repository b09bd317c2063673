"""
FastAPI dependencies
"""

from fastapi import HTTPException, Request, status
from fhir_gateway.services.subscription_lifecycle import SubscriptionLifecycle


def get_lifecycle(request: Request) -> SubscriptionLifecycle:
    """The subscription lifecycle built on application startup."""
    lifecycle = getattr(request.app.state, "subscription_lifecycle", None)
    if lifecycle is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription lifecycle not initialized",
        )
    return lifecycle
