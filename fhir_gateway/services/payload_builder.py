"""
Subscription notification payloads

Builds R4 subscriptions-backport notification bundles and post-processes them
according to the notification type being dispatched.

Features:
- Generic ``history`` bundle with a SubscriptionStatus ``Parameters`` entry
- One ``notification-event`` per focus resource
- Type-aware rewrite of the ``type`` parameter (handshake, heartbeat, ...)
- Event fields stripped from handshake and heartbeat notifications
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

from fhir_gateway.integrations.fhir import (
    NOTIFICATION_BUNDLE_PROFILE,
    SUBSCRIPTION_STATUS_PROFILE,
    FHIRResourceType,
    RestOperation,
)
from fhir_gateway.services.notification_context import NotificationType, current_or_default

# Parameters that only make sense when concrete trigger events exist
EVENT_PARAMETERS = frozenset({"notification-event", "events-since-subscription-start"})

_REQUEST_METHODS = {
    RestOperation.CREATE: "POST",
    RestOperation.UPDATE: "PUT",
    RestOperation.DELETE: "DELETE",
    RestOperation.READ: "GET",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PayloadBuilder(Protocol):
    """Contract shared by the generic builder and its decorators."""

    def build_payload(
        self,
        resources: Sequence[Dict[str, Any]],
        subscription: Dict[str, Any],
        topic_url: str,
        operation: RestOperation,
        events_since_start: int = 0,
    ) -> Dict[str, Any]: ...


class SubscriptionTopicPayloadBuilder:
    """Builds the generic event-notification bundle."""

    def __init__(self, server_base_url: str):
        self.server_base_url = server_base_url.rstrip("/")

    def subscription_url(self, subscription_id: str) -> str:
        return f"{self.server_base_url}/Subscription/{subscription_id}"

    def build_payload(
        self,
        resources: Sequence[Dict[str, Any]],
        subscription: Dict[str, Any],
        topic_url: str,
        operation: RestOperation,
        events_since_start: int = 0,
    ) -> Dict[str, Any]:
        """
        Build a notification bundle.

        Args:
            resources: Focus resources that triggered the notification (may be empty)
            subscription: The Subscription being notified
            topic_url: Topic canonical
            operation: REST interaction that changed the resources
            events_since_start: Event counter for the subscription, including ``resources``

        Returns:
            A ``history`` Bundle whose first entry is the status Parameters
        """
        timestamp = _now_iso()
        status_id = str(uuid.uuid4())
        first_event_number = events_since_start - len(resources) + 1

        parameters: List[Dict[str, Any]] = [
            {"name": "subscription", "valueReference": {"reference": self.subscription_url(subscription["id"])}},
            {"name": "topic", "valueCanonical": topic_url},
            {"name": "status", "valueCode": subscription.get("status", "active")},
            {"name": "type", "valueCode": NotificationType.EVENT_NOTIFICATION.value},
            {"name": "events-since-subscription-start", "valueString": str(events_since_start)},
        ]
        for offset, resource in enumerate(resources):
            parameters.append(
                {
                    "name": "notification-event",
                    "part": [
                        {"name": "event-number", "valueString": str(first_event_number + offset)},
                        {"name": "timestamp", "valueInstant": timestamp},
                        {"name": "focus", "valueReference": {"reference": self._relative_url(resource)}},
                    ],
                }
            )

        entries: List[Dict[str, Any]] = [
            {
                "fullUrl": f"urn:uuid:{status_id}",
                "resource": {
                    "resourceType": FHIRResourceType.PARAMETERS.value,
                    "id": status_id,
                    "meta": {"profile": [SUBSCRIPTION_STATUS_PROFILE]},
                    "parameter": parameters,
                },
            }
        ]
        for resource in resources:
            entries.append(
                {
                    "fullUrl": f"{self.server_base_url}/{self._relative_url(resource)}",
                    "resource": resource,
                    "request": {
                        "method": _REQUEST_METHODS.get(operation, "PUT"),
                        "url": self._relative_url(resource),
                    },
                }
            )

        return {
            "resourceType": FHIRResourceType.BUNDLE.value,
            "id": str(uuid.uuid4()),
            "meta": {"profile": [NOTIFICATION_BUNDLE_PROFILE]},
            "type": "history",
            "timestamp": timestamp,
            "entry": entries,
        }

    @staticmethod
    def _relative_url(resource: Dict[str, Any]) -> str:
        return f"{resource.get('resourceType')}/{resource.get('id')}"


def augment_payload(bundle: Dict[str, Any], notification_type: NotificationType) -> Dict[str, Any]:
    """
    Stamp a notification bundle with its notification type.

    Rewrites the status ``type`` parameter to the code of ``notification_type``
    and, for handshakes and heartbeats, drops the event parameters. Only the
    status Parameters entry is touched; bundles of any other shape are
    returned unchanged.
    """
    entries = bundle.get("entry") or []
    if bundle.get("resourceType") != FHIRResourceType.BUNDLE.value or not entries:
        return bundle

    status = entries[0].get("resource") or {}
    if status.get("resourceType") != FHIRResourceType.PARAMETERS.value:
        return bundle

    parameters = status.get("parameter") or []
    for parameter in parameters:
        if parameter.get("name") == "type" and "valueCode" in parameter:
            parameter["valueCode"] = notification_type.value
            break

    if parameters and not notification_type.carries_events:
        status["parameter"] = [p for p in parameters if p.get("name") not in EVENT_PARAMETERS]

    return bundle


class NotificationAwarePayloadBuilder:
    """
    Decorates a PayloadBuilder with notification-type post-processing.

    The type is taken from the ``notification_type`` argument when given,
    otherwise from the ambient notification context.
    """

    def __init__(self, base: PayloadBuilder):
        self.base = base

    def build_payload(
        self,
        resources: Sequence[Dict[str, Any]],
        subscription: Dict[str, Any],
        topic_url: str,
        operation: RestOperation,
        events_since_start: int = 0,
        notification_type: Optional[NotificationType] = None,
    ) -> Dict[str, Any]:
        bundle = self.base.build_payload(resources, subscription, topic_url, operation, events_since_start)
        return augment_payload(bundle, notification_type or current_or_default())
