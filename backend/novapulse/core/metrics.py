# Centralized Prometheus metrics for the API and the queue workers.
# Queue gauges are refreshed by the stats endpoint and by workers,
# counters are bumped at each state transition.

from time import monotonic

from fastapi import Request
from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware


# Generic API latency + request counters, labelled by method and route
# template so cardinality stays bounded.
REQUEST_DURATION_MS = Histogram(
    "request_duration_ms",
    "API request duration in milliseconds",
    ["method", "route"],
    buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2000, 5000, 10000],
)
REQUESTS_TOTAL = Counter(
    "requests_total",
    "Total API requests",
    ["method", "route", "status_code"],
)

QUEUE_DEPTH = Gauge(
    "queue_depth",
    "Jobs per queue and state",
    ["queue", "state"],
)
QUEUE_JOB_TOTAL = Counter(
    "queue_job_total",
    "Queue jobs processed",
    ["queue", "status"],
)
QUEUE_ENQUEUED_TOTAL = Counter(
    "queue_enqueued_total",
    "Jobs enqueued",
    ["queue"],
)
QUEUE_RETRY_TOTAL = Counter(
    "queue_retry_total",
    "Queue jobs scheduled for another attempt",
    ["queue"],
)
QUEUE_LEASES_REAPED_TOTAL = Counter(
    "queue_leases_reaped_total",
    "Active jobs recovered after their lease expired",
    ["queue"],
)
QUEUE_WAIT_SECONDS = Histogram(
    "queue_wait_seconds",
    "Time a job spent waiting in queue",
    ["queue"],
    buckets=[0.1, 0.5, 1, 5, 15, 60, 300, 900, 3600],
)
QUEUE_RUN_SECONDS = Histogram(
    "queue_run_seconds",
    "Queue job runtime in seconds",
    ["queue"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
)

WEBHOOK_DELIVERIES_TOTAL = Counter(
    "webhook_deliveries_total",
    "Webhook delivery attempts by outcome",
    ["event", "outcome"],
)
WEBHOOK_DELIVERY_SECONDS = Histogram(
    "webhook_delivery_seconds",
    "Webhook HTTP round trip in seconds",
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)
# Event names come from callers, so only a known catalogue gets its own
# label value; everything else is counted under "other".
WEBHOOK_METRIC_EVENTS = frozenset(
    {
        "task.created",
        "task.updated",
        "task.deleted",
        "task.completed",
        "user.created",
        "user.updated",
        "user.deleted",
        "project.created",
        "project.updated",
        "project.deleted",
        "workflow.executed",
        "workflow.failed",
        "webhook.test",
    }
)

WEBHOOK_EVENTS_FANNED_OUT_TOTAL = Counter(
    "webhook_events_fanned_out_total",
    "Webhook jobs created by event fan-out",
    ["event"],
)


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = monotonic()
        response = await call_next(request)
        duration_ms = (monotonic() - start) * 1000.0

        route = request.scope.get("route")
        route_path = getattr(route, "path", None) or request.url.path
        REQUEST_DURATION_MS.labels(request.method, route_path).observe(duration_ms)
        REQUESTS_TOTAL.labels(request.method, route_path, str(response.status_code)).inc()
        return response


def _label(value: object | None, default: str = "unknown") -> str:
    if value is None:
        return default
    if isinstance(value, str) and not value.strip():
        return default
    return str(value)


def _event_label(event: str | None) -> str:
    if event is None or not str(event).strip():
        return "unknown"
    return event if event in WEBHOOK_METRIC_EVENTS else "other"


def record_queue_depth(queue_name: str, counts: dict[str, int]) -> None:
    for state, value in counts.items():
        QUEUE_DEPTH.labels(queue=_label(queue_name), state=_label(state)).set(value)


def record_queue_enqueued(queue_name: str) -> None:
    QUEUE_ENQUEUED_TOTAL.labels(queue=_label(queue_name)).inc()


def record_queue_job(queue_name: str, *, status: str) -> None:
    QUEUE_JOB_TOTAL.labels(queue=_label(queue_name), status=_label(status)).inc()


def record_queue_retry(queue_name: str) -> None:
    QUEUE_RETRY_TOTAL.labels(queue=_label(queue_name)).inc()


def record_lease_reaped(queue_name: str) -> None:
    QUEUE_LEASES_REAPED_TOTAL.labels(queue=_label(queue_name)).inc()


def record_queue_wait(queue_name: str, seconds: float) -> None:
    QUEUE_WAIT_SECONDS.labels(queue=_label(queue_name)).observe(seconds)


def record_queue_runtime(queue_name: str, seconds: float) -> None:
    QUEUE_RUN_SECONDS.labels(queue=_label(queue_name)).observe(seconds)


def record_webhook_delivery(*, event: str | None, success: bool, seconds: float | None = None) -> None:
    WEBHOOK_DELIVERIES_TOTAL.labels(
        event=_event_label(event),
        outcome="success" if success else "failure",
    ).inc()
    if seconds is not None:
        WEBHOOK_DELIVERY_SECONDS.observe(seconds)


def record_event_fan_out(event: str, count: int) -> None:
    if count:
        WEBHOOK_EVENTS_FANNED_OUT_TOTAL.labels(event=_event_label(event)).inc(count)
