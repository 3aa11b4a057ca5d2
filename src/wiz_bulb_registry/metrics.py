"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "wiz_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "wiz_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
DEVICE_COMMAND_RESULTS = Counter(
    "wiz_device_commands_total",
    "Device command outcomes",
    ["method", "result"],
    registry=_REGISTRY,
)
DEVICE_COMMAND_DURATION = Histogram(
    "wiz_device_command_duration_seconds",
    "Round-trip time of device commands",
    ["method", "result"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
PROTOCOL_ANOMALIES = Counter(
    "wiz_protocol_anomalies_total",
    "Datagrams that could not be decoded or did not match the request",
    ["reason"],
    registry=_REGISTRY,
)
DISCOVERY_RESPONSES = Counter(
    "wiz_discovery_responses_total",
    "Discovery responses accepted",
    ["mode"],
    registry=_REGISTRY,
)
DISCOVERY_ERRORS = Counter(
    "wiz_discovery_errors_total",
    "Discovery responses discarded or probes that failed to send",
    ["reason"],
    registry=_REGISTRY,
)
DISCOVERY_SCAN_DURATION = Histogram(
    "wiz_discovery_scan_duration_seconds",
    "Time spent collecting discovery replies",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)
REFRESH_RESULTS = Counter(
    "wiz_refresh_results_total",
    "Background refresh outcomes per bulb",
    ["result"],
    registry=_REGISTRY,
)
REFRESH_CYCLE_DURATION = Histogram(
    "wiz_refresh_cycle_duration_seconds",
    "Time spent refreshing a batch of bulbs",
    registry=_REGISTRY,
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
)
REGISTRY_SIZE = Gauge(
    "wiz_registry_bulbs",
    "Number of bulbs held by the registry",
    registry=_REGISTRY,
)
STORE_FAILURES = Counter(
    "wiz_store_failures_total",
    "Persistent store operations that failed",
    ["operation"],
    registry=_REGISTRY,
)
REFRESH_SUPPRESSIONS = Counter(
    "wiz_refresh_suppressions_total",
    "Times the refresh loop was paused after repeated failed cycles",
    registry=_REGISTRY,
)
REFRESH_STATUS = Gauge(
    "wiz_refresh_status",
    "Refresh loop health (0=suppressed,1=degraded/recovering,2=ok)",
    registry=_REGISTRY,
)
BULBS_OFFLINE = Gauge(
    "wiz_bulbs_offline",
    "Bulbs that did not answer their most recent refresh",
    registry=_REGISTRY,
)


def get_registry() -> CollectorRegistry:
    """Return the collector registry holding the service metrics."""

    return _REGISTRY


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def observe_device_command(method: str, result: str, duration_seconds: float) -> None:
    """Record the outcome and round-trip time of a device exchange."""

    DEVICE_COMMAND_RESULTS.labels(method=method, result=result).inc()
    DEVICE_COMMAND_DURATION.labels(method=method, result=result).observe(duration_seconds)


def record_protocol_anomaly(reason: str) -> None:
    PROTOCOL_ANOMALIES.labels(reason=reason).inc()


def record_discovery_response(mode: str) -> None:
    """Record an accepted discovery response."""

    DISCOVERY_RESPONSES.labels(mode=mode).inc()


def record_discovery_error(reason: str) -> None:
    """Record a discarded discovery response or failed probe."""

    DISCOVERY_ERRORS.labels(reason=reason).inc()


def observe_discovery_scan(result: str, duration_seconds: float) -> None:
    DISCOVERY_SCAN_DURATION.labels(result=result).observe(duration_seconds)


def record_refresh_result(result: str) -> None:
    REFRESH_RESULTS.labels(result=result).inc()


def observe_refresh_cycle(duration_seconds: float) -> None:
    REFRESH_CYCLE_DURATION.observe(duration_seconds)


def set_registry_size(count: int) -> None:
    REGISTRY_SIZE.set(count)


def record_store_failure(operation: str) -> None:
    STORE_FAILURES.labels(operation=operation).inc()


def record_refresh_suppressed() -> None:
    REFRESH_SUPPRESSIONS.inc()


def record_refresh_status(status: str) -> None:
    """Record the current refresh loop status."""

    code = 0
    if status == "ok":
        code = 2
    elif status in {"recovering", "degraded"}:
        code = 1
    REFRESH_STATUS.set(code)


def set_bulbs_offline(count: int) -> None:
    BULBS_OFFLINE.set(count)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
