"""
Subscription lifecycle wiring

Builds the store, delivery client, dispatcher, handshake sender/finalizer,
create interceptor, heartbeat service and patient merge service, and owns
their start/stop order. The FastAPI app keeps one instance on ``app.state``.
"""

import time
from concurrent.futures import wait
from dataclasses import dataclass
from typing import Callable, List, Optional

import httpx
from fhir_gateway.core.config import settings
from fhir_gateway.core.database import SessionLocal
from fhir_gateway.core.logging import get_logger
from fhir_gateway.integrations.fhir import ResourceStore
from fhir_gateway.services.handshake_finalizer import SubscriptionHandshakeFinalizer
from fhir_gateway.services.handshake_interceptor import SubscriptionCreateHandshakeInterceptor
from fhir_gateway.services.handshake_sender import SubscriptionHandshakeSender
from fhir_gateway.services.heartbeat_service import HeartbeatScheduler, SubscriptionHeartbeatService
from fhir_gateway.services.patient_merge_service import PatientMergeService
from fhir_gateway.services.payload_builder import NotificationAwarePayloadBuilder, SubscriptionTopicPayloadBuilder
from fhir_gateway.services.rest_hook_client import RestHookClient
from fhir_gateway.services.topic_dispatcher import SubscriptionTopicDispatcher
from fhir_gateway.services.topic_notify_service import TopicNotifyService
from sqlalchemy.orm import Session

logger = get_logger(__name__)


@dataclass
class SubscriptionLifecycle:
    """All subscription lifecycle components of one running gateway."""

    store: ResourceStore
    delivery_client: RestHookClient
    dispatcher: SubscriptionTopicDispatcher
    notify_service: TopicNotifyService
    finalizer: SubscriptionHandshakeFinalizer
    sender: SubscriptionHandshakeSender
    interceptor: SubscriptionCreateHandshakeInterceptor
    heartbeat_service: SubscriptionHeartbeatService
    heartbeat_scheduler: HeartbeatScheduler
    patient_merge: PatientMergeService

    async def start(self, heartbeat: bool = True) -> None:
        if heartbeat:
            await self.heartbeat_scheduler.start()
        logger.info("subscription_lifecycle_started", heartbeat=heartbeat)

    async def stop(self) -> None:
        await self.heartbeat_scheduler.stop()
        self.close()
        logger.info("subscription_lifecycle_stopped")

    def close(self) -> None:
        """Shut the worker pools down (in-flight work is allowed to finish)."""
        self.sender.shutdown(wait=True)
        self.finalizer.shutdown(wait=True)
        self.dispatcher.shutdown(wait=True)
        self.delivery_client.close()

    def drain(self, timeout: float = 10.0) -> bool:
        """
        Wait until no handshake send, finalize or delivery is in flight.

        Handshake sends enqueue finalizes, so pools are polled until all
        are empty at once.

        Returns:
            True if everything completed within ``timeout``
        """
        deadline = time.monotonic() + timeout
        while True:
            pending = self._in_flight()
            if not pending:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("subscription_lifecycle_drain_timeout", pending=len(pending))
                return False
            wait(pending, timeout=remaining)

    def _in_flight(self) -> List:
        pending = self.sender.pending() + self.finalizer.pending() + self.dispatcher.pending_deliveries()
        return [future for future in pending if not future.done()]


def build_subscription_lifecycle(
    session_factory: Callable[[], Session] = SessionLocal,
    transport: Optional[httpx.BaseTransport] = None,
    server_base_url: Optional[str] = None,
    clock: Callable[[], float] = time.time,
) -> SubscriptionLifecycle:
    """
    Wire the subscription lifecycle from settings.

    Args:
        session_factory: Session factory used by every background component
        transport: Optional httpx transport for outbound deliveries (tests)
        server_base_url: Overrides settings.FHIR_SERVER_BASE
        clock: Epoch-seconds clock for heartbeat due checks
    """
    base_url = server_base_url or settings.FHIR_SERVER_BASE

    store = ResourceStore()
    delivery_client = RestHookClient(
        connect_timeout=settings.HANDSHAKE_CONNECT_TIMEOUT_SEC,
        read_timeout=settings.HANDSHAKE_READ_TIMEOUT_SEC,
        transport=transport,
    )
    dispatcher = SubscriptionTopicDispatcher(
        session_factory,
        store,
        NotificationAwarePayloadBuilder(SubscriptionTopicPayloadBuilder(base_url)),
        delivery_client,
        max_workers=settings.NOTIFICATION_DELIVERY_WORKERS,
    )
    notify_service = TopicNotifyService(dispatcher)

    finalizer = SubscriptionHandshakeFinalizer(session_factory, store)
    sender = SubscriptionHandshakeSender(
        session_factory,
        store,
        delivery_client,
        finalizer,
        base_url,
        max_workers=settings.HANDSHAKE_SEND_WORKERS,
    )
    interceptor = SubscriptionCreateHandshakeInterceptor(sender)
    store.register_pre_storage_hook(interceptor.on_pre_storage_create)

    heartbeat_service = SubscriptionHeartbeatService(
        session_factory,
        store,
        notify_service,
        grace_seconds=settings.HEARTBEAT_GRACE_SECONDS,
        clock=clock,
    )
    heartbeat_scheduler = HeartbeatScheduler(heartbeat_service, tick_seconds=settings.HEARTBEAT_TICK_SECONDS)

    patient_merge = PatientMergeService(store, notify_service, settings.PATIENT_MERGE_TOPIC)

    return SubscriptionLifecycle(
        store=store,
        delivery_client=delivery_client,
        dispatcher=dispatcher,
        notify_service=notify_service,
        finalizer=finalizer,
        sender=sender,
        interceptor=interceptor,
        heartbeat_service=heartbeat_service,
        heartbeat_scheduler=heartbeat_scheduler,
        patient_merge=patient_merge,
    )
