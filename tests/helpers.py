"""Shared constants and fakes for the test suite."""

import json
import threading

import httpx

SERVER_BASE = "http://fhir.test/fhir"
SUBSCRIBER_URL = "http://subscriber.test/hook"
TOPIC_URL = "http://example.org/fhir/SubscriptionTopic/encounter-start"


class RecordingEndpoint:
    """
    Fake rest-hook subscriber behind an ``httpx.MockTransport``.

    ``responses`` maps a URL to the status code to answer with, or to an
    exception instance to raise; unknown URLs answer ``default_status``.
    """

    def __init__(self, default_status: int = 200):
        self.default_status = default_status
        self.responses = {}
        self.requests = []
        self._lock = threading.Lock()
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        outcome = self.responses.get(str(request.url), self.default_status)
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome)

    def bundles(self, url: str = None):
        return [json.loads(r.content) for r in self.requests if url is None or str(r.url) == url]


def status_parameters(bundle):
    """The SubscriptionStatus Parameters of a notification bundle as {name: parameter}."""
    status = bundle["entry"][0]["resource"]
    return {p["name"]: p for p in status["parameter"]}
