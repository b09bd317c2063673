"""Unit tests for topic dispatch and rest-hook delivery."""

from concurrent.futures import wait

import pytest
from fhir_gateway.core.database import transaction
from fhir_gateway.integrations.fhir import RestOperation
from fhir_gateway.services.notification_context import NotificationType, notification_scope
from fhir_gateway.services.payload_builder import NotificationAwarePayloadBuilder, SubscriptionTopicPayloadBuilder
from fhir_gateway.services.rest_hook_client import RestHookClient
from fhir_gateway.services.topic_dispatcher import SubscriptionTopicDispatcher
from tests.helpers import SERVER_BASE, TOPIC_URL, status_parameters

OTHER_TOPIC = "http://example.org/fhir/SubscriptionTopic/other"
ENCOUNTER = {"resourceType": "Encounter", "id": "enc-1"}


@pytest.fixture
def client(endpoint):
    rest_hook = RestHookClient(transport=endpoint.transport)
    yield rest_hook
    rest_hook.close()


@pytest.fixture
def dispatcher(session_factory, store, client):
    builder = NotificationAwarePayloadBuilder(SubscriptionTopicPayloadBuilder(SERVER_BASE))
    topic_dispatcher = SubscriptionTopicDispatcher(session_factory, store, builder, client, max_workers=2)
    yield topic_dispatcher
    topic_dispatcher.shutdown()


@pytest.fixture
def subscribe(db, store, make_subscription):
    def _subscribe(hook, criteria=TOPIC_URL, status="active", **kwargs):
        with transaction(db):
            return store.create(db, make_subscription(status=status, criteria=criteria, endpoint=hook, **kwargs))

    return _subscribe


def flush(dispatcher):
    wait(dispatcher.pending_deliveries(), timeout=5)


def test_dispatch_reaches_only_matching_active_subscriptions(dispatcher, subscribe, endpoint):
    subscribe("http://a.test/hook")
    subscribe("http://b.test/hook", criteria=f"{TOPIC_URL}?patient=Patient/1")
    subscribe("http://c.test/hook", criteria=OTHER_TOPIC)
    subscribe("http://d.test/hook", status="off")
    subscribe("http://e.test/hook", channel_type="websocket")

    queued = dispatcher.dispatch(TOPIC_URL, [ENCOUNTER], RestOperation.CREATE)
    flush(dispatcher)

    assert queued == 2
    assert sorted(str(r.url) for r in endpoint.requests) == ["http://a.test/hook", "http://b.test/hook"]


def test_dispatch_without_subscribers_queues_nothing(dispatcher, endpoint):
    assert dispatcher.dispatch(TOPIC_URL, [ENCOUNTER], RestOperation.UPDATE) == 0
    assert endpoint.requests == []


def test_event_counter_increments_per_resource(dispatcher, subscribe, endpoint):
    subscribe("http://a.test/hook")

    dispatcher.dispatch(TOPIC_URL, [ENCOUNTER], RestOperation.UPDATE)
    dispatcher.dispatch(TOPIC_URL, [ENCOUNTER, {"resourceType": "Encounter", "id": "enc-2"}], RestOperation.UPDATE)
    dispatcher.dispatch(TOPIC_URL, [], RestOperation.UPDATE, notification_type=NotificationType.HEARTBEAT)
    flush(dispatcher)

    counts = sorted(
        int(status_parameters(b)["events-since-subscription-start"]["valueString"])
        for b in endpoint.bundles()
        if "events-since-subscription-start" in status_parameters(b)
    )
    assert counts == [1, 3]


def test_heartbeat_dispatch_payload(dispatcher, subscribe, endpoint):
    subscribe("http://a.test/hook", headers=["X-Token: abc"])

    assert dispatcher.dispatch(TOPIC_URL, [], RestOperation.UPDATE, notification_type=NotificationType.HEARTBEAT) == 1
    flush(dispatcher)

    request = endpoint.requests[0]
    assert request.headers["X-Token"] == "abc"
    params = status_parameters(endpoint.bundles()[0])
    assert params["type"]["valueCode"] == "heartbeat"
    assert "events-since-subscription-start" not in params


def test_ambient_type_used_without_explicit_type(dispatcher, subscribe, endpoint):
    subscribe("http://a.test/hook")

    with notification_scope(NotificationType.HANDSHAKE):
        dispatcher.dispatch(TOPIC_URL, [], RestOperation.UPDATE)
    flush(dispatcher)

    assert status_parameters(endpoint.bundles()[0])["type"]["valueCode"] == "handshake"


def test_failed_delivery_is_not_raised(dispatcher, subscribe, endpoint):
    endpoint.default_status = 500
    subscribe("http://a.test/hook")

    assert dispatcher.dispatch(TOPIC_URL, [ENCOUNTER], RestOperation.UPDATE) == 1
    done, not_done = wait(dispatcher.pending_deliveries(), timeout=5)

    assert not not_done
    assert all(not f.result().ok for f in done)


def test_event_counters_of_inactive_subscriptions_are_dropped(dispatcher, subscribe, db, store):
    created = [subscribe(f"http://{name}.test/hook") for name in ("a", "b", "c")]
    dispatcher.dispatch(TOPIC_URL, [ENCOUNTER], RestOperation.UPDATE)
    flush(dispatcher)
    assert all(dispatcher.event_count(s["id"]) == 1 for s in created)

    with transaction(db):
        store.delete(db, "Subscription", created[0]["id"])
        store.delete(db, "Subscription", created[1]["id"])
        created[2]["status"] = "off"
        store.update(db, created[2])

    assert dispatcher.dispatch(TOPIC_URL, [ENCOUNTER], RestOperation.UPDATE) == 0
    assert all(dispatcher.event_count(s["id"]) is None for s in created)


def test_retain_event_counts_keeps_active(dispatcher, subscribe):
    kept = subscribe("http://a.test/hook")
    dispatcher.dispatch(TOPIC_URL, [ENCOUNTER], RestOperation.UPDATE)
    flush(dispatcher)

    assert dispatcher.retain_event_counts([kept["id"]]) == 0
    assert dispatcher.retain_event_counts([]) == 1
    assert dispatcher.event_count(kept["id"]) is None
