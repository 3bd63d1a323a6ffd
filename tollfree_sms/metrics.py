"""
Prometheus metrics for the toll-free SMS service.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook outcome counter (event kind, result)
- Provisioning, queue drain and reconciler counters
- Carrier API call counter (operation, outcome)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# kind: inbound_message, delivery_status, verification_update, unknown, none
# result: processed, dropped, ignored, failed, invalid_signature
webhook_events_total = Counter(
    "webhook_events_total",
    "Carrier webhook events by kind and outcome",
    labelnames=["kind", "result"]
)

# result: provisioned, queued, failed
provisioning_outcomes_total = Counter(
    "provisioning_outcomes_total",
    "Provisioning workflow outcomes",
    labelnames=["result"]
)

# result: done, error, skipped
queue_drain_items_total = Counter(
    "queue_drain_items_total",
    "Provisioning queue items handled by the drain worker",
    labelnames=["result"]
)

reconciler_businesses_total = Counter(
    "reconciler_businesses_total",
    "Businesses examined by the status reconciler",
    labelnames=["result"]
)

carrier_requests_total = Counter(
    "carrier_requests_total",
    "Carrier API calls by operation and outcome",
    labelnames=["operation", "outcome"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(kind: str, result: str) -> None:
    webhook_events_total.labels(kind=kind, result=result).inc()


def record_provisioning_outcome(result: str) -> None:
    provisioning_outcomes_total.labels(result=result).inc()


def record_drain_item(result: str) -> None:
    queue_drain_items_total.labels(result=result).inc()


def record_reconciler_result(result: str) -> None:
    reconciler_businesses_total.labels(result=result).inc()


def record_carrier_call(operation: str, outcome: str) -> None:
    carrier_requests_total.labels(operation=operation, outcome=outcome).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
