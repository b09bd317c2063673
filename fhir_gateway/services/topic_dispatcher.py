"""
Subscription topic dispatcher

Generic dispatch entry point shared by event notifications, heartbeats and
handshakes: finds the active subscriptions listening on a topic, builds one
payload per subscription and queues its rest-hook delivery.

Topic filters (criteria predicates beyond the topic itself) are not evaluated.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from fhir_gateway.core.metrics import notifications_queued_total
from fhir_gateway.integrations.fhir import (
    FHIRResourceType,
    FHIRSubscription,
    ResourceStore,
    RestOperation,
    SubscriptionStatus,
)
from fhir_gateway.services.notification_context import NotificationType, current_or_default
from fhir_gateway.services.payload_builder import NotificationAwarePayloadBuilder
from fhir_gateway.services.rest_hook_client import DeliveryResult, RestHookClient
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class SubscriptionTopicDispatcher:
    """Fan-out of one topic notification to every matching active subscription."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: ResourceStore,
        payload_builder: NotificationAwarePayloadBuilder,
        delivery_client: RestHookClient,
        max_workers: int = 4,
    ):
        self._session_factory = session_factory
        self._store = store
        self._payload_builder = payload_builder
        self._delivery_client = delivery_client
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notification-delivery")
        self._event_counts: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._pending: set = set()

    def dispatch(
        self,
        topic: str,
        resources: Sequence[Dict[str, Any]],
        operation: RestOperation,
        notification_type: Optional[NotificationType] = None,
    ) -> int:
        """
        Queue a notification on ``topic`` for every matching active subscription.

        Args:
            topic: Topic canonical URL
            resources: Focus resources (empty for heartbeats and handshakes)
            operation: REST interaction that changed the resources
            notification_type: Notification kind; defaults to the ambient context

        Returns:
            Number of deliveries queued (0 when no active rest-hook subscription matches)
        """
        notification_type = notification_type or current_or_default()

        with self._session_factory() as db:
            candidates = self._store.search(
                db,
                FHIRResourceType.SUBSCRIPTION.value,
                status=SubscriptionStatus.ACTIVE.value,
            )
        self.retain_event_counts(s["id"] for s in candidates)

        queued = 0
        for subscription in candidates:
            view = FHIRSubscription.from_fhir(subscription)
            if view.topic != topic or not view.has_rest_hook_endpoint:
                continue

            events_since_start = self._count_events(view.id, len(resources) if notification_type.carries_events else 0)
            bundle = self._payload_builder.build_payload(
                resources,
                subscription,
                topic,
                operation,
                events_since_start=events_since_start,
                notification_type=notification_type,
            )
            self._submit(view, bundle)
            queued += 1

        if queued:
            notifications_queued_total.labels(type=notification_type.value).inc(queued)
        logger.debug("Dispatched %s on %s to %d subscription(s)", notification_type.value, topic, queued)
        return queued

    def _count_events(self, subscription_id: str, new_events: int) -> int:
        with self._lock:
            total = self._event_counts.get(subscription_id, 0) + new_events
            self._event_counts[subscription_id] = total
            return total

    def event_count(self, subscription_id: str) -> Optional[int]:
        with self._lock:
            return self._event_counts.get(subscription_id)

    def retain_event_counts(self, subscription_ids: Iterable[str]) -> int:
        """Drop counters of subscriptions that are no longer active; returns how many were dropped."""
        keep = set(subscription_ids)
        with self._lock:
            stale = [sid for sid in self._event_counts if sid not in keep]
            for sid in stale:
                del self._event_counts[sid]
        if stale:
            logger.debug("Dropped event counters for %d inactive subscription(s)", len(stale))
        return len(stale)

    def _submit(self, subscription: FHIRSubscription, bundle: Dict[str, Any]) -> None:
        future = self._executor.submit(
            self._delivery_client.post_bundle,
            subscription.endpoint,
            bundle,
            subscription.header_dict(),
        )
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_delivered)

    def _on_delivered(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Notification delivery crashed: %s", error)
            return
        result: DeliveryResult = future.result()
        if not result.ok:
            logger.warning(
                "Notification delivery to %s failed (status=%s, error=%s)",
                result.endpoint,
                result.status_code,
                result.error,
            )

    def pending_deliveries(self) -> List[Future]:
        with self._lock:
            return list(self._pending)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
