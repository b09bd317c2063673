"""
Pytest configuration and shared fixtures for the FHIR gateway test suite.
"""

import os
import tempfile

# Settings are read at import time; these defaults only apply when the
# variables are not already set by the caller/CI.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="fhir-gateway-tests-")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TEST_DB_DIR, 'default.db')}")
os.environ.setdefault("HEARTBEAT_ENABLED", "false")
os.environ.setdefault("FHIR_SERVER_BASE", "http://fhir.test/fhir")

import pytest  # noqa: E402
from fhir_gateway.core.database import build_engine, init_db  # noqa: E402
from fhir_gateway.integrations.fhir import HEARTBEAT_PERIOD_EXTENSION, ResourceStore  # noqa: E402
from fhir_gateway.services.subscription_lifecycle import build_subscription_lifecycle  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from tests.helpers import SERVER_BASE, SUBSCRIBER_URL, TOPIC_URL, RecordingEndpoint  # noqa: E402


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite engine (shared by worker threads) with tables created."""
    test_engine = build_engine(f"sqlite:///{tmp_path / 'fhir.db'}")
    init_db(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store():
    return ResourceStore()


@pytest.fixture
def endpoint():
    return RecordingEndpoint()


@pytest.fixture
def lifecycle(session_factory, endpoint):
    """Fully wired lifecycle delivering to the recording endpoint."""
    built = build_subscription_lifecycle(
        session_factory=session_factory,
        transport=endpoint.transport,
        server_base_url=SERVER_BASE,
    )
    yield built
    built.close()


@pytest.fixture
def make_subscription():
    """Factory for R4 Subscription resources."""

    def _make(
        status="requested",
        criteria=TOPIC_URL,
        endpoint=SUBSCRIBER_URL,
        channel_type="rest-hook",
        heartbeat_period=None,
        headers=None,
    ):
        channel = {"type": channel_type, "payload": "application/fhir+json"}
        if endpoint is not None:
            channel["endpoint"] = endpoint
        if headers:
            channel["header"] = list(headers)
        if heartbeat_period is not None:
            channel["extension"] = [{"url": HEARTBEAT_PERIOD_EXTENSION, "valueUnsignedInt": heartbeat_period}]
        return {
            "resourceType": "Subscription",
            "status": status,
            "reason": "test",
            "criteria": criteria,
            "channel": channel,
        }

    return _make


@pytest.fixture
def make_patient():
    """Factory for Patient resources, optionally with an MR identifier."""

    def _make(family="Doe", mr_value=None):
        patient = {"resourceType": "Patient", "active": True, "name": [{"family": family}]}
        if mr_value is not None:
            patient["identifier"] = [
                {
                    "type": {
                        "coding": [{"system": "http://terminology.hl7.org/CodeSystem/v2-0203", "code": "MR"}]
                    },
                    "system": "urn:oid:1.2.3.4",
                    "value": mr_value,
                }
            ]
        return patient

    return _make
