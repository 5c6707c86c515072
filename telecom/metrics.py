"""
Prometheus metrics for the messaging service.

HTTP traffic is labelled by route template, never by raw path, so message ids
and cell digits do not end up in label values.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"],
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"],
)

messages_sent_total = Counter(
    "messages_sent_total",
    "Send attempts by outcome",
    labelnames=["result"],
)

status_updates_total = Counter(
    "status_updates_total",
    "Delivery/read transitions by target status and outcome",
    labelnames=["status", "result"],
)

malformed_records_total = Counter(
    "malformed_records_total",
    "Message store records rejected by schema validation",
)

live_subscriptions = Gauge(
    "live_subscriptions",
    "Open live conversation subscriptions",
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_send_outcome(result: str) -> None:
    """
    Args:
        result: sent, empty_body, no_recipient, invalid_participant or store_unavailable
    """
    messages_sent_total.labels(result=result).inc()


def record_status_update(status: str, result: str) -> None:
    """
    Args:
        status: Target status, delivered or read
        result: updated, noop or failed
    """
    status_updates_total.labels(status=status, result=result).inc()


def record_malformed_record() -> None:
    malformed_records_total.inc()


def get_metrics() -> bytes:
    """Current metrics in the Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
