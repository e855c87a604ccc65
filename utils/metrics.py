"""Prometheus metrics for the signup service"""
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

registry = CollectorRegistry()

# Process/platform defaults (CPU, memory, fds, python version)
ProcessCollector(registry=registry)
PlatformCollector(registry=registry)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "route", "status_code"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
    registry=registry,
)
http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "route", "status_code"],
    registry=registry,
)

signup_requests_total = Counter(
    "signup_requests_total",
    "Total number of signup requests",
    ["endpoint", "status"],
    registry=registry,
)
signup_duration_seconds = Histogram(
    "signup_duration_seconds",
    "Duration of signup processing in seconds",
    ["endpoint"],
    buckets=(0.1, 0.5, 1, 2, 5, 10),
    registry=registry,
)

sheets_requests_total = Counter(
    "sheets_requests_total",
    "Total number of Google Sheets API requests",
    ["operation", "status"],
    registry=registry,
)
sheets_request_duration_seconds = Histogram(
    "sheets_request_duration_seconds",
    "Duration of Google Sheets API requests in seconds",
    ["operation"],
    buckets=(0.5, 1, 2, 5, 10, 30),
    registry=registry,
)

turnstile_requests_total = Counter(
    "turnstile_requests_total",
    "Total number of Turnstile verification requests",
    ["status"],
    registry=registry,
)
turnstile_validation_duration_seconds = Histogram(
    "turnstile_validation_duration_seconds",
    "Duration of Turnstile token validation in seconds",
    buckets=(0.1, 0.25, 0.5, 1, 2, 5),
    registry=registry,
)


def _status(success: bool) -> str:
    return "success" if success else "error"


def record_http_request(method: str, route: str, status_code: int, duration: float) -> None:
    labels = {"method": method, "route": route, "status_code": str(status_code)}
    http_requests_total.labels(**labels).inc()
    http_request_duration_seconds.labels(**labels).observe(duration)


def record_signup(endpoint: str, success: bool, duration: float) -> None:
    signup_requests_total.labels(endpoint=endpoint, status=_status(success)).inc()
    signup_duration_seconds.labels(endpoint=endpoint).observe(duration)


def record_sheets_request(operation: str, success: bool, duration: float) -> None:
    sheets_requests_total.labels(operation=operation, status=_status(success)).inc()
    sheets_request_duration_seconds.labels(operation=operation).observe(duration)


def record_turnstile_verification(success: bool, duration: float) -> None:
    turnstile_requests_total.labels(status=_status(success)).inc()
    turnstile_validation_duration_seconds.observe(duration)


def render_metrics() -> tuple[bytes, str]:
    """Return (exposition body, content type) for the /metrics endpoint."""
    return generate_latest(registry), CONTENT_TYPE_LATEST
