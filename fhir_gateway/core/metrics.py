"""Prometheus metrics for the subscription lifecycle."""

from prometheus_client import Counter, Histogram


def _safe_counter(*args, **kwargs):
    try:
        return Counter(*args, **kwargs)
    except ValueError:
        # Already registered (module re-imported); return a dummy that does nothing
        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def inc(self, *args, **kwargs):
                pass

        return DummyMetric()


def _safe_histogram(*args, **kwargs):
    try:
        return Histogram(*args, **kwargs)
    except ValueError:

        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def observe(self, *args, **kwargs):
                pass

        return DummyMetric()


# Handshake metrics
handshake_attempts_total = _safe_counter(
    "fhir_handshake_attempts_total",
    "Handshake attempts by outcome",
    ["outcome"],  # ok, failed, skipped
)

handshake_finalized_total = _safe_counter(
    "fhir_handshake_finalized_total",
    "Handshake finalize calls by resulting status",
    ["status"],  # active, error, skipped
)

# Heartbeat metrics
heartbeat_dispatches_total = _safe_counter(
    "fhir_heartbeat_dispatches_total",
    "Heartbeat dispatches per topic",
    ["result"],  # queued, empty
)

heartbeat_tick_duration_seconds = _safe_histogram(
    "fhir_heartbeat_tick_duration_seconds",
    "Duration of one heartbeat scheduler tick",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
)

# Notification delivery metrics
notifications_queued_total = _safe_counter(
    "fhir_notifications_queued_total",
    "Notifications queued for delivery by notification type",
    ["type"],
)

notification_delivery_total = _safe_counter(
    "fhir_notification_delivery_total",
    "Rest-hook deliveries by result",
    ["result"],  # ok, failed
)

# HTTP metrics
http_requests_total = _safe_counter(
    "fhir_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = _safe_histogram(
    "fhir_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
)
