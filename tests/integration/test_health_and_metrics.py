"""Health, readiness, metrics and request tracing."""


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_ready(client):
    response = client.get("/ready")

    assert response.status_code == 200
    assert response.json()["checks"] == {"database": True, "subscription_lifecycle": True}


def test_metrics_expose_lifecycle_counters(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "fhir_handshake_attempts_total" in response.text
    assert "fhir_heartbeat_tick_duration_seconds" in response.text


def test_correlation_id_is_echoed(client):
    response = client.get("/health", headers={"X-Correlation-ID": "abc-123"})
    assert response.headers["X-Correlation-ID"] == "abc-123"

    generated = client.get("/health")
    assert generated.headers["X-Correlation-ID"]
