"""End-to-end handshake tests: create a Subscription over REST and watch it activate."""

import httpx
import pytest
from fhir_gateway.services.handshake_interceptor import HANDSHAKE_TAG_SYSTEM
from tests.helpers import SUBSCRIBER_URL, TOPIC_URL, status_parameters

FHIR_JSON = {"Content-Type": "application/fhir+json"}


def create_subscription(client, resource):
    response = client.post("/fhir/Subscription", json=resource, headers=FHIR_JSON)
    assert response.status_code == 201, response.text
    return response.json()


def test_successful_handshake_activates_subscription(client, lifecycle, endpoint, make_subscription):
    created = create_subscription(client, make_subscription(status="requested"))

    assert created["status"] == "off"
    tags = created["meta"]["tag"]
    assert len(tags) == 1 and tags[0]["system"] == HANDSHAKE_TAG_SYSTEM

    assert lifecycle.drain(timeout=10)

    stored = client.get(f"/fhir/Subscription/{created['id']}").json()
    assert stored["status"] == "active"
    assert "tag" not in stored["meta"]
    assert stored["meta"]["versionId"] == "2"

    handshakes = endpoint.bundles(SUBSCRIBER_URL)
    assert len(handshakes) == 1
    params = status_parameters(handshakes[0])
    assert params["type"]["valueCode"] == "handshake"
    assert params["topic"]["valueCanonical"] == TOPIC_URL
    assert params["subscription"]["valueReference"]["reference"].endswith(f"/Subscription/{created['id']}")


@pytest.mark.parametrize("outcome", [500, 404, httpx.ConnectError("refused"), httpx.ReadTimeout("timed out")])
def test_failed_handshake_sets_error(client, lifecycle, endpoint, make_subscription, outcome):
    endpoint.responses[SUBSCRIBER_URL] = outcome

    created = create_subscription(client, make_subscription(status="requested"))
    assert lifecycle.drain(timeout=10)

    stored = client.get(f"/fhir/Subscription/{created['id']}").json()
    assert stored["status"] == "error"
    assert "tag" not in stored["meta"]


def test_subscription_without_endpoint_stays_dormant(client, lifecycle, endpoint, make_subscription):
    created = create_subscription(client, make_subscription(status="requested", endpoint=None))
    assert lifecycle.drain(timeout=10)

    stored = client.get(f"/fhir/Subscription/{created['id']}").json()
    assert stored["status"] == "off"
    assert endpoint.requests == []


def test_delete_after_handshake(client, lifecycle, make_subscription):
    created = create_subscription(client, make_subscription(status="requested"))
    lifecycle.drain(timeout=10)

    assert client.delete(f"/fhir/Subscription/{created['id']}").status_code == 204
    assert client.get(f"/fhir/Subscription/{created['id']}").status_code == 404


@pytest.mark.parametrize("status", ["active", "off", "error"])
def test_client_may_only_submit_requested(client, endpoint, make_subscription, status):
    response = client.post("/fhir/Subscription", json=make_subscription(status=status), headers=FHIR_JSON)

    assert response.status_code == 422
    body = response.json()
    assert body["resourceType"] == "OperationOutcome"
    assert body["issue"][0]["code"] == "processing"
    assert client.get("/fhir/Subscription").json()["total"] == 0
    assert endpoint.requests == []


@pytest.mark.parametrize("status", ["active", "error"])
def test_update_cannot_set_core_owned_status(client, lifecycle, endpoint, make_subscription, status):
    created = create_subscription(client, make_subscription(status="requested", endpoint=None))
    assert lifecycle.drain(timeout=10)
    assert created["status"] == "off"

    created["status"] = status
    response = client.put(f"/fhir/Subscription/{created['id']}", json=created, headers=FHIR_JSON)

    assert response.status_code == 422
    assert response.json()["resourceType"] == "OperationOutcome"
    stored = client.get(f"/fhir/Subscription/{created['id']}").json()
    assert stored["status"] == "off"
    assert stored["meta"]["versionId"] == "1"


def test_update_keeping_status_is_allowed(client, lifecycle, make_subscription):
    created = create_subscription(client, make_subscription(status="requested"))
    assert lifecycle.drain(timeout=10)
    stored = client.get(f"/fhir/Subscription/{created['id']}").json()
    assert stored["status"] == "active"

    stored["reason"] = "updated reason"
    response = client.put(f"/fhir/Subscription/{created['id']}", json=stored, headers=FHIR_JSON)

    assert response.status_code == 200
    assert response.json()["status"] == "active"
    assert response.json()["reason"] == "updated reason"


def test_heartbeat_after_activation(client, lifecycle, endpoint, make_subscription):
    create_subscription(client, make_subscription(status="requested", heartbeat_period=60))
    assert lifecycle.drain(timeout=10)

    result = lifecycle.heartbeat_service.run()
    assert lifecycle.drain(timeout=10)

    assert result.dispatched_topics == [TOPIC_URL]
    heartbeat = endpoint.bundles(SUBSCRIBER_URL)[-1]
    params = status_parameters(heartbeat)
    assert params["type"]["valueCode"] == "heartbeat"
    assert "events-since-subscription-start" not in params
