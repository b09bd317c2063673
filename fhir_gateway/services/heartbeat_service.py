"""
Subscription heartbeat service

Periodically sends heartbeat notifications to active Subscriptions that ask
for them (backport ``heartbeat-period`` channel extension).

Each tick:
1. Load active Subscriptions
2. Keep those with a bare topic canonical and a positive heartbeat period
3. Select the ones due (elapsed + grace >= period)
4. Dispatch one heartbeat per topic with at least one due Subscription
5. Record "last sent" only for topics where something was queued
6. Forget Subscriptions that are no longer active

The "last sent" tracker is in memory only; after a restart every Subscription
is simply overdue once.
"""

import asyncio
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from fhir_gateway.core.logging import get_logger
from fhir_gateway.core.metrics import heartbeat_dispatches_total, heartbeat_tick_duration_seconds
from fhir_gateway.integrations.fhir import (
    HEARTBEAT_PERIOD_EXTENSION,
    FHIRResourceType,
    FHIRSubscription,
    ResourceStore,
    SubscriptionStatus,
)
from fhir_gateway.services.topic_notify_service import TopicNotifyService
from sqlalchemy.orm import Session

logger = get_logger(__name__)

_QUERY_CHARACTERS = frozenset("?&=")
_PERIOD_VALUE_KEYS = ("valueUnsignedInt", "valuePositiveInt", "valueInteger")


def bare_topic_uri(criteria: Optional[str]) -> Optional[str]:
    """
    The criteria as a topic canonical, if it is one.

    Only bare absolute http(s) URIs qualify; anything with query syntax
    (``?``, ``&``, ``=``) or whitespace is rejected.
    """
    if not criteria:
        return None
    if any(c in _QUERY_CHARACTERS or c.isspace() for c in criteria):
        return None
    try:
        parts = urlsplit(criteria)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return criteria


def heartbeat_period_seconds(subscription: Dict[str, Any]) -> Optional[int]:
    """Heartbeat period from the channel extension, or None if absent or not positive."""
    for extension in FHIRSubscription.from_fhir(subscription).channel_extensions:
        if extension.get("url") != HEARTBEAT_PERIOD_EXTENSION:
            continue
        for key in _PERIOD_VALUE_KEYS:
            value = extension.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                return value if value > 0 else None
    return None


class HeartbeatTracker:
    """Thread-safe map of subscription id -> last heartbeat (epoch seconds)."""

    def __init__(self) -> None:
        self._last_sent: Dict[str, float] = {}
        self._lock = threading.Lock()

    def last_sent(self, subscription_id: str) -> Optional[float]:
        with self._lock:
            return self._last_sent.get(subscription_id)

    def mark_sent(self, subscription_ids: Iterable[str], at: float) -> None:
        with self._lock:
            for subscription_id in subscription_ids:
                self._last_sent[subscription_id] = at

    def retain_only(self, subscription_ids: Iterable[str]) -> int:
        """Drop entries not in ``subscription_ids``; returns how many were dropped."""
        keep = set(subscription_ids)
        with self._lock:
            stale = [key for key in self._last_sent if key not in keep]
            for key in stale:
                del self._last_sent[key]
        return len(stale)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._last_sent)

    def __len__(self) -> int:
        with self._lock:
            return len(self._last_sent)


@dataclass
class HeartbeatCandidate:
    subscription_id: str
    topic: str
    period_seconds: int


@dataclass
class HeartbeatTickResult:
    """What one tick did"""

    active: int = 0
    due: Dict[str, List[str]] = field(default_factory=dict)  # topic -> subscription ids
    queued: Dict[str, int] = field(default_factory=dict)  # topic -> queued count
    forgotten: int = 0

    @property
    def dispatched_topics(self) -> List[str]:
        return list(self.queued)


class SubscriptionHeartbeatService:
    """Runs heartbeat ticks against the resource store."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: ResourceStore,
        notify_service: TopicNotifyService,
        tracker: Optional[HeartbeatTracker] = None,
        grace_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self._session_factory = session_factory
        self._store = store
        self._notify_service = notify_service
        self.tracker = tracker or HeartbeatTracker()
        self.grace_seconds = grace_seconds
        self._clock = clock

    def is_due(self, subscription_id: str, period_seconds: int, now: float) -> bool:
        last = self.tracker.last_sent(subscription_id) or 0.0
        return (now - last) + self.grace_seconds >= period_seconds

    def run(self) -> HeartbeatTickResult:
        """Execute one heartbeat tick."""
        start = time.time()
        result = HeartbeatTickResult()

        with self._session_factory() as db:
            active = self._store.search(db, FHIRResourceType.SUBSCRIPTION.value, status=SubscriptionStatus.ACTIVE.value)
        result.active = len(active)

        now = self._clock()
        for candidate in self._candidates(active):
            if self.is_due(candidate.subscription_id, candidate.period_seconds, now):
                result.due.setdefault(candidate.topic, []).append(candidate.subscription_id)

        for topic, subscription_ids in result.due.items():
            queued = self._notify_service.dispatch_heartbeat(topic)
            if queued > 0:
                self.tracker.mark_sent(subscription_ids, now)
                result.queued[topic] = queued
                heartbeat_dispatches_total.labels(result="queued").inc()
            else:
                heartbeat_dispatches_total.labels(result="empty").inc()
                logger.debug("heartbeat_nothing_queued", topic=topic, due=len(subscription_ids))

        result.forgotten = self.tracker.retain_only(s["id"] for s in active)

        heartbeat_tick_duration_seconds.observe(time.time() - start)
        if result.due:
            logger.info(
                "heartbeat_tick",
                active=result.active,
                due=sum(len(ids) for ids in result.due.values()),
                topics=len(result.due),
                dispatched=len(result.queued),
            )
        return result

    @staticmethod
    def _candidates(subscriptions: List[Dict[str, Any]]) -> List[HeartbeatCandidate]:
        by_topic: Dict[str, List[HeartbeatCandidate]] = defaultdict(list)
        for subscription in subscriptions:
            topic = bare_topic_uri(subscription.get("criteria"))
            period = heartbeat_period_seconds(subscription)
            if topic is None or period is None:
                logger.debug("heartbeat_not_configured", subscription_id=subscription.get("id"))
                continue
            by_topic[topic].append(HeartbeatCandidate(subscription["id"], topic, period))
        return [candidate for group in by_topic.values() for candidate in group]


class HeartbeatScheduler:
    """
    Fixed-period asyncio loop around SubscriptionHeartbeatService.run.

    Each tick runs in a worker thread and is awaited before the loop sleeps,
    so ticks never overlap. A failing tick is logged and the loop carries on.
    """

    def __init__(self, service: SubscriptionHeartbeatService, tick_seconds: float = 60.0):
        self.service = service
        self.tick_seconds = tick_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background tick loop."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("heartbeat_scheduler_started", tick_seconds=self.tick_seconds)

    async def stop(self) -> None:
        """Stop the loop; a tick already in progress runs to completion first."""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("heartbeat_scheduler_stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.to_thread(self.service.run)
            except Exception as exc:  # noqa: BLE001
                logger.error("heartbeat_tick_failed", error=str(exc), exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                continue
