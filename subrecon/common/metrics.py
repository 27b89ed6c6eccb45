"""Prometheus metric definitions for the reconciler."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


notifications_received_total = Counter(
    "notifications_received_total",
    "Decoded provider notifications by symbolic kind",
    ["service", "kind"],
)
duplicate_notifications_total = Counter(
    "duplicate_notifications_total",
    "Notifications short-circuited by the idempotency guard",
    ["service"],
)
webhook_rejections_total = Counter(
    "webhook_rejections_total",
    "Pushes rejected before reconciliation",
    ["service", "reason"],
)
provider_fetch_failures_total = Counter(
    "provider_fetch_failures_total",
    "Provider state fetches that failed and left the notification retryable",
    ["service", "error_type"],
)
provider_fetch_seconds = Histogram(
    "provider_fetch_seconds",
    "Provider subscription fetch latency seconds",
    ["service"],
)
reconciliation_anomalies_total = Counter(
    "reconciliation_anomalies_total",
    "Business anomalies recorded for backfill",
    ["service", "kind"],
)
renewal_payments_recorded_total = Counter(
    "renewal_payments_recorded_total",
    "Recurring payment rows inserted by the ledger writer",
    ["service"],
)
offgraph_transitions_total = Counter(
    "offgraph_transitions_total",
    "Recurring-status transitions applied outside the expected graph",
    ["service", "from_state", "to_state"],
)
reconcile_latency_seconds = Histogram(
    "reconcile_latency_seconds",
    "End-to-end push handling latency seconds",
    ["service", "outcome"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
