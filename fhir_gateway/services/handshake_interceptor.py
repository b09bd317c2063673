"""
Subscription create handshake interceptor

Pre-storage hook enforcing the handshake for new Subscriptions. When a
Subscription is created with status ``requested`` it:

- sets the status to ``off`` before storage, so nothing activates it early
- attaches a one-time tracking tag to find it again after commit
- registers a post-commit callback that schedules the handshake

Activation only ever happens later, through the handshake finalizer.
"""

import uuid
from typing import Any, Dict

from fhir_gateway.core.database import register_after_commit
from fhir_gateway.core.logging import get_logger
from fhir_gateway.integrations.fhir import FHIRResourceType, SubscriptionStatus, add_tag
from fhir_gateway.services.handshake_sender import SubscriptionHandshakeSender
from sqlalchemy.orm import Session

logger = get_logger(__name__)

HANDSHAKE_TAG_SYSTEM = "urn:fhir-gateway:handshake"
HANDSHAKE_CODE_PREFIX = "pending-"


class SubscriptionCreateHandshakeInterceptor:
    """Forces requested Subscriptions through the handshake before activation."""

    def __init__(self, handshake_sender: SubscriptionHandshakeSender):
        self.handshake_sender = handshake_sender

    def on_pre_storage_create(self, resource: Dict[str, Any], db: Session) -> None:
        """
        Intercept a resource about to be created.

        Args:
            resource: The resource being created (mutated in place)
            db: Session of the enclosing write transaction
        """
        if resource.get("resourceType") != FHIRResourceType.SUBSCRIPTION.value:
            return
        if resource.get("status") != SubscriptionStatus.REQUESTED.value:
            return

        # prevent auto-activation
        resource["status"] = SubscriptionStatus.OFF.value

        code = f"{HANDSHAKE_CODE_PREFIX}{uuid.uuid4()}"
        add_tag(resource, HANDSHAKE_TAG_SYSTEM, code)

        def start_handshake() -> None:
            self.handshake_sender.schedule(HANDSHAKE_TAG_SYSTEM, code)

        register_after_commit(db, start_handshake)
        logger.debug("handshake_pending", subscription_id=resource.get("id"), tag_code=code)
