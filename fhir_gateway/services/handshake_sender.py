"""
Subscription handshake sender

Performs the handshake for a freshly created Subscription:

1. Locate the Subscription by its handshake tracking tag
2. Re-read it and check it still awaits a handshake on a rest-hook channel
3. POST a handshake notification bundle to the endpoint
4. Hand the outcome to the finalizer (never waiting for it)

Delivery failures of any kind (timeout, refused connection, non-2xx, bad
payload) end in ``ok=False`` and are never raised to the caller: the caller
is a post-commit callback with no request left to report to.
"""

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fhir_gateway.core.logging import get_logger
from fhir_gateway.core.metrics import handshake_attempts_total
from fhir_gateway.integrations.fhir import (
    HANDSHAKE_PENDING_STATUSES,
    NOTIFICATION_BUNDLE_PROFILE,
    SUBSCRIPTION_STATUS_PROFILE,
    FHIRResourceType,
    FHIRSubscription,
    ResourceNotFoundError,
    ResourceStore,
    SubscriptionStatus,
)
from fhir_gateway.services.handshake_finalizer import SubscriptionHandshakeFinalizer
from fhir_gateway.services.notification_context import NotificationType
from fhir_gateway.services.rest_hook_client import RestHookClient
from sqlalchemy.orm import Session

logger = get_logger(__name__)


class SubscriptionHandshakeSender:
    """Sends handshake notifications and routes their outcome to the finalizer."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: ResourceStore,
        delivery_client: RestHookClient,
        finalizer: SubscriptionHandshakeFinalizer,
        server_base_url: str,
        max_workers: int = 2,
    ):
        self._session_factory = session_factory
        self._store = store
        self._delivery_client = delivery_client
        self._finalizer = finalizer
        self.server_base_url = server_base_url.rstrip("/")
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="handshake-sender")
        self._lock = threading.Lock()
        self._pending: set = set()

    def schedule(self, system: str, code: str) -> Future:
        """Run ``locate_by_tag`` on the handshake send pool."""
        future = self._executor.submit(self.locate_by_tag, system, code)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def locate_by_tag(self, system: str, code: str) -> Optional[Future]:
        """
        Find the Subscription carrying tag (system, code) and attempt its handshake.

        Returns:
            The finalize future, or None when nothing was attempted
        """
        with self._session_factory() as db:
            matches = self._store.search(db, FHIRResourceType.SUBSCRIPTION.value, tag=(system, code))

        if not matches:
            # Deleted or already reconciled in the meantime
            logger.warning("handshake_marker_not_found", tag_system=system, tag_code=code)
            return None

        found = matches[-1]
        logger.info(
            "handshake_started",
            subscription_id=found["id"],
            status=found.get("status"),
            tags=len((found.get("meta") or {}).get("tag") or []),
        )
        return self.attempt(found["id"], system, code)

    def attempt(self, subscription_id: str, mark_system: str, mark_code: str) -> Optional[Future]:
        """
        Send the handshake for one Subscription and queue its finalize.

        Returns:
            The finalize future, or None when the Subscription is no longer eligible
        """
        try:
            with self._session_factory() as db:
                subscription = self._store.read(db, FHIRResourceType.SUBSCRIPTION.value, subscription_id)
        except ResourceNotFoundError:
            logger.debug("handshake_skipped", subscription_id=subscription_id, reason="deleted")
            handshake_attempts_total.labels(outcome="skipped").inc()
            return None

        view = FHIRSubscription.from_fhir(subscription)
        if view.status not in HANDSHAKE_PENDING_STATUSES:
            logger.debug("handshake_skipped", subscription_id=subscription_id, status=view.status)
            handshake_attempts_total.labels(outcome="skipped").inc()
            return None
        if not view.has_rest_hook_endpoint:
            logger.debug("handshake_skipped", subscription_id=subscription_id, reason="no rest-hook endpoint")
            handshake_attempts_total.labels(outcome="skipped").inc()
            return None

        try:
            bundle = self.build_handshake_bundle(subscription)
            result = self._delivery_client.post_bundle(view.endpoint, bundle, view.header_dict())
            ok = result.ok
            logger.info(
                "handshake_posted",
                subscription_id=subscription_id,
                endpoint=view.endpoint,
                http_status=result.status_code,
                ok=ok,
            )
        except Exception:
            logger.warning("handshake_exception", subscription_id=subscription_id, endpoint=view.endpoint, exc_info=True)
            ok = False

        handshake_attempts_total.labels(outcome="ok" if ok else "failed").inc()
        return self._finalizer.submit(subscription_id, mark_system, mark_code, ok)

    def build_handshake_bundle(self, subscription: Dict[str, Any]) -> Dict[str, Any]:
        """Build the handshake notification bundle for a Subscription."""
        status_id = str(uuid.uuid4())
        subscription_ref = f"{self.server_base_url}/Subscription/{subscription['id']}"

        status = {
            "resourceType": FHIRResourceType.PARAMETERS.value,
            "id": status_id,
            "meta": {"profile": [SUBSCRIPTION_STATUS_PROFILE]},
            "parameter": [
                {"name": "subscription", "valueReference": {"reference": subscription_ref}},
                {"name": "topic", "valueCanonical": subscription.get("criteria")},
                {"name": "status", "valueCode": SubscriptionStatus.REQUESTED.value},
                {"name": "type", "valueCode": NotificationType.HANDSHAKE.value},
                {"name": "events-since-subscription-start", "valueString": "0"},
            ],
        }

        return {
            "resourceType": FHIRResourceType.BUNDLE.value,
            "meta": {"profile": [NOTIFICATION_BUNDLE_PROFILE]},
            "type": "history",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "entry": [{"fullUrl": f"urn:uuid:{status_id}", "resource": status}],
        }

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("handshake_schedule_failed", error=str(future.exception()))

    def pending(self) -> List[Future]:
        with self._lock:
            return list(self._pending)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
