"""
Prometheus metrics for the delivery-status service.

This module provides:
- HTTP request counter (method, path, status)
- Webhook event counter (kind, result)
- Status transition counter (result)
- Outbound message counter (result)
- Request latency histogram (method, path)

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

# kind: message, status, payload
# result: created, duplicate, applied, ignored, untracked, malformed
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook events by kind and processing result",
    labelnames=["kind", "result"]
)

# result: applied, ignored, untracked
status_transitions_total = Counter(
    "status_transitions_total",
    "Status reconciliation outcomes",
    labelnames=["result"]
)

# result: sent, transport_error, duplicate
outbound_messages_total = Counter(
    "outbound_messages_total",
    "Outbound message dispatch outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
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


def record_webhook_event(kind: str, result: str, count: int = 1) -> None:
    """Record `count` webhook events of `kind` with the given result."""
    if count > 0:
        webhook_events_total.labels(kind=kind, result=result).inc(count)


def record_status_transition(result: str) -> None:
    status_transitions_total.labels(result=result).inc()


def record_outbound_message(result: str) -> None:
    outbound_messages_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
