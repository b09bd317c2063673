"""Unit tests for notification payload building and type augmentation."""

import copy

import pytest
from fhir_gateway.integrations.fhir import NOTIFICATION_BUNDLE_PROFILE, RestOperation
from fhir_gateway.services.notification_context import NotificationType, notification_scope
from fhir_gateway.services.payload_builder import (
    NotificationAwarePayloadBuilder,
    SubscriptionTopicPayloadBuilder,
    augment_payload,
)
from tests.helpers import SERVER_BASE, TOPIC_URL, status_parameters

SUBSCRIPTION = {"resourceType": "Subscription", "id": "sub-1", "status": "active", "criteria": TOPIC_URL}
ENCOUNTER = {"resourceType": "Encounter", "id": "enc-1", "status": "in-progress"}


@pytest.fixture
def builder():
    return SubscriptionTopicPayloadBuilder(SERVER_BASE)


def test_generic_bundle_shape(builder):
    bundle = builder.build_payload([ENCOUNTER], SUBSCRIPTION, TOPIC_URL, RestOperation.CREATE, events_since_start=4)

    assert bundle["resourceType"] == "Bundle"
    assert bundle["type"] == "history"
    assert bundle["meta"]["profile"] == [NOTIFICATION_BUNDLE_PROFILE]

    params = status_parameters(bundle)
    assert params["subscription"]["valueReference"]["reference"] == f"{SERVER_BASE}/Subscription/sub-1"
    assert params["topic"]["valueCanonical"] == TOPIC_URL
    assert params["type"]["valueCode"] == "event-notification"
    assert params["events-since-subscription-start"]["valueString"] == "4"

    event_parts = {p["name"]: p for p in params["notification-event"]["part"]}
    assert event_parts["event-number"]["valueString"] == "4"
    assert event_parts["focus"]["valueReference"]["reference"] == "Encounter/enc-1"

    focus_entry = bundle["entry"][1]
    assert focus_entry["resource"] == ENCOUNTER
    assert focus_entry["request"] == {"method": "POST", "url": "Encounter/enc-1"}


@pytest.mark.parametrize("notification_type", [NotificationType.HANDSHAKE, NotificationType.HEARTBEAT])
def test_handshake_and_heartbeat_strip_event_parameters(builder, notification_type):
    bundle = builder.build_payload([ENCOUNTER], SUBSCRIPTION, TOPIC_URL, RestOperation.UPDATE, events_since_start=1)

    augment_payload(bundle, notification_type)

    status = bundle["entry"][0]["resource"]
    names = [p["name"] for p in status["parameter"]]
    assert "notification-event" not in names
    assert "events-since-subscription-start" not in names
    assert status_parameters(bundle)["type"]["valueCode"] == notification_type.value


@pytest.mark.parametrize(
    "notification_type", [NotificationType.QUERY_STATUS, NotificationType.QUERY_EVENT, NotificationType.EVENT_NOTIFICATION]
)
def test_query_types_keep_event_parameters(builder, notification_type):
    bundle = builder.build_payload([ENCOUNTER], SUBSCRIPTION, TOPIC_URL, RestOperation.UPDATE, events_since_start=1)

    augment_payload(bundle, notification_type)

    params = status_parameters(bundle)
    assert params["type"]["valueCode"] == notification_type.value
    assert "notification-event" in params
    assert "events-since-subscription-start" in params


def test_augment_never_touches_focus_resources(builder):
    bundle = builder.build_payload([ENCOUNTER], SUBSCRIPTION, TOPIC_URL, RestOperation.UPDATE, events_since_start=1)
    focus_before = copy.deepcopy(bundle["entry"][1:])

    augment_payload(bundle, NotificationType.HEARTBEAT)

    assert bundle["entry"][1:] == focus_before


@pytest.mark.parametrize(
    "bundle",
    [
        {"resourceType": "Patient", "id": "x"},
        {"resourceType": "Bundle", "type": "history"},
        {"resourceType": "Bundle", "entry": [{"resource": {"resourceType": "Patient", "id": "x"}}]},
        {"resourceType": "Bundle", "entry": [{"resource": {"resourceType": "Parameters"}}]},
    ],
)
def test_augment_is_noop_on_unexpected_shapes(bundle):
    before = copy.deepcopy(bundle)
    assert augment_payload(bundle, NotificationType.HEARTBEAT) == before


def test_heartbeat_payload_for_topic_without_events(builder):
    """A heartbeat carries the type code and no event fields."""
    decorated = NotificationAwarePayloadBuilder(builder)

    bundle = decorated.build_payload(
        [], SUBSCRIPTION, TOPIC_URL, RestOperation.UPDATE, notification_type=NotificationType.HEARTBEAT
    )

    params = status_parameters(bundle)
    assert params["type"]["valueCode"] == "heartbeat"
    assert "notification-event" not in params
    assert "events-since-subscription-start" not in params
    assert len(bundle["entry"]) == 1


def test_decorator_falls_back_to_ambient_context(builder):
    decorated = NotificationAwarePayloadBuilder(builder)

    with notification_scope(NotificationType.QUERY_STATUS):
        bundle = decorated.build_payload([], SUBSCRIPTION, TOPIC_URL, RestOperation.UPDATE)
    assert status_parameters(bundle)["type"]["valueCode"] == "query-status"

    bundle = decorated.build_payload([], SUBSCRIPTION, TOPIC_URL, RestOperation.UPDATE)
    assert status_parameters(bundle)["type"]["valueCode"] == "event-notification"


def test_explicit_type_wins_over_context(builder):
    decorated = NotificationAwarePayloadBuilder(builder)

    with notification_scope(NotificationType.EVENT_NOTIFICATION):
        bundle = decorated.build_payload(
            [], SUBSCRIPTION, TOPIC_URL, RestOperation.UPDATE, notification_type=NotificationType.HANDSHAKE
        )

    assert status_parameters(bundle)["type"]["valueCode"] == "handshake"
