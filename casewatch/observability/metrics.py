# ==== PROMETHEUS METRICS ==== #

"""
Prometheus metrics for the casewatch escalation engine.

Covers HTTP request latency, evaluation passes, raised and suppressed
escalations, auto-action and notification failures, and database connection
usage.
"""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    REGISTRY
)


# ==== REQUEST METRICS ==== #

http_request_latency_seconds = Histogram(
    "casewatch_http_request_latency_seconds",
    "API request latency in seconds",
    ["company", "method", "route"]
)


# ==== EVALUATION METRICS ==== #

evaluation_pass_duration_seconds = Histogram(
    "casewatch_evaluation_pass_duration_seconds",
    "Time spent on one escalation evaluation pass in seconds",
    ["company"],
    buckets=[0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300]
)

cases_evaluated_total = Counter(
    "casewatch_cases_evaluated_total",
    "Total cases evaluated by outcome",
    ["outcome"]
)

evaluation_failures_total = Counter(
    "casewatch_evaluation_failures_total",
    "Per-case evaluation failures isolated from the batch",
    ["error_type"]
)


# ==== ESCALATION METRICS ==== #

escalations_raised_total = Counter(
    "casewatch_escalations_raised_total",
    "Total escalations recorded by level and stage",
    ["level", "stage"]
)

escalation_duplicates_suppressed_total = Counter(
    "casewatch_escalation_duplicates_suppressed_total",
    "Escalation raises that found the level already recorded",
    ["stage"]
)

escalations_resolved_total = Counter(
    "casewatch_escalations_resolved_total",
    "Total escalations resolved by resolver kind",
    ["resolver"]
)

sla_warnings_total = Counter(
    "casewatch_sla_warnings_total",
    "Total sla_warning timeline events emitted",
    ["stage"]
)

auto_action_failures_total = Counter(
    "casewatch_auto_action_failures_total",
    "Auto-actions that failed without reversing the escalation",
    ["action"]
)

notification_enqueue_failures_total = Counter(
    "casewatch_notification_enqueue_failures_total",
    "Notification requests that could not be enqueued",
    ["channel"]
)

notifications_enqueued_total = Counter(
    "casewatch_notifications_enqueued_total",
    "Notification requests enqueued after escalation commit",
    ["channel"]
)

open_escalations = Gauge(
    "casewatch_open_escalations",
    "Unresolved escalations seen by the last evaluation pass",
    ["company"]
)


# ==== SYSTEM METRICS ==== #

db_connections_active = Gauge(
    "casewatch_db_connections_active",
    "Active database sessions"
)

app_info = Gauge(
    "casewatch_app_info",
    "Application information",
    ["version", "environment", "service_name"]
)


def init_metrics(app) -> None:
    """Initialize metrics collection.

    Args:
        app: FastAPI application instance
    """
    from casewatch import __version__
    from casewatch.settings import settings
    app_info.labels(
        version=__version__,
        environment=settings.APP_ENV,
        service_name=settings.SERVICE_NAME
    ).set(1)


# Metrics router for Prometheus scraping
metrics_router = APIRouter()


@metrics_router.get("/metrics")
def get_metrics() -> PlainTextResponse:
    """Expose Prometheus metrics for scraping."""
    return PlainTextResponse(
        generate_latest(REGISTRY).decode("utf-8"),
        media_type="text/plain"
    )
