"""
Topic notify service

Named dispatch entry points for each notification kind. Each call passes the
kind explicitly to the dispatcher and also scopes the ambient notification
context around it, restoring the previous value even when dispatch raises.
"""

from typing import Any, Dict, Sequence

from fhir_gateway.integrations.fhir import RestOperation
from fhir_gateway.services.notification_context import NotificationType, notification_scope
from fhir_gateway.services.topic_dispatcher import SubscriptionTopicDispatcher


class TopicNotifyService:
    """Dispatches event, heartbeat and handshake notifications on a topic."""

    def __init__(self, dispatcher: SubscriptionTopicDispatcher):
        self.dispatcher = dispatcher

    def dispatch_event(
        self,
        topic_url: str,
        resources: Sequence[Dict[str, Any]],
        operation: RestOperation = RestOperation.UPDATE,
    ) -> int:
        return self._dispatch(topic_url, resources, operation, NotificationType.EVENT_NOTIFICATION)

    def dispatch_heartbeat(self, topic_url: str) -> int:
        return self._dispatch(topic_url, [], RestOperation.UPDATE, NotificationType.HEARTBEAT)

    def dispatch_handshake(self, topic_url: str) -> int:
        return self._dispatch(topic_url, [], RestOperation.UPDATE, NotificationType.HANDSHAKE)

    def _dispatch(
        self,
        topic_url: str,
        resources: Sequence[Dict[str, Any]],
        operation: RestOperation,
        notification_type: NotificationType,
    ) -> int:
        with notification_scope(notification_type):
            return self.dispatcher.dispatch(topic_url, resources, operation, notification_type=notification_type)
