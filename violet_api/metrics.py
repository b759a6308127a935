"""
Prometheus metrics for the Violet Virgo API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Schema repair counter (action)
- Carousel upload and message outcome counters (result)

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

# action: created, column_added, relaxed, recreated, legacy_imported, failed
schema_repairs_total = Counter(
    "schema_repairs_total",
    "Schema reconciliation actions",
    labelnames=["action"]
)

# result: created, repaired, validation_error, error
carousel_uploads_total = Counter(
    "carousel_uploads_total",
    "Carousel image upload outcomes",
    labelnames=["result"]
)

# result: created, repaired, validation_error, error
messages_saved_total = Counter(
    "messages_saved_total",
    "Message submission outcomes",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template when known (/api/carrusel/{image_id}), else raw path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
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


def record_schema_repair(action: str) -> None:
    schema_repairs_total.labels(action=action).inc()


def record_upload_outcome(result: str) -> None:
    carousel_uploads_total.labels(result=result).inc()


def record_message_outcome(result: str) -> None:
    messages_saved_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
