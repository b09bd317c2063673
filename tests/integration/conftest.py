"""Fixtures running the FastAPI app against a per-test database and lifecycle."""

import pytest
from fastapi.testclient import TestClient
from fhir_gateway.core.database import get_db
from fhir_gateway.main import app


@pytest.fixture
def client(session_factory, lifecycle):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.subscription_lifecycle = lifecycle
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
        app.state.subscription_lifecycle = None
