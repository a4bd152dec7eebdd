"""Prometheus metrics for the calendar sync service.

Metrics collected:
- HTTP request count and latency
- Sync runs and per-provider event counts
- Sync errors per provider and scope
- OAuth callback outcomes

Usage:
    from calsync.services.metrics import SYNC_RUNS, SYNC_EVENTS

    SYNC_RUNS.labels(scope="full").inc()
    SYNC_EVENTS.labels(provider="google", result="pushed").inc(3)
"""

from prometheus_client import Counter, Histogram, Info, REGISTRY, generate_latest
import structlog

logger = structlog.get_logger()

# Application info
APP_INFO = Info(
    "calendar_sync",
    "Calendar sync service info"
)

# HTTP request metrics
REQUEST_COUNT = Counter(
    "calendar_sync_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

REQUEST_LATENCY = Histogram(
    "calendar_sync_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Sync metrics
SYNC_RUNS = Counter(
    "calendar_sync_runs_total",
    "Sync engine runs",
    ["scope"]  # full, event
)

SYNC_EVENTS = Counter(
    "calendar_sync_events_total",
    "Events handled by the sync engine",
    ["provider", "result"]  # pushed, imported, skipped
)

SYNC_ERRORS = Counter(
    "calendar_sync_errors_total",
    "Provider- and event-scoped sync errors",
    ["provider", "phase"]  # token, push, pull
)

# OAuth metrics
OAUTH_CALLBACKS = Counter(
    "calendar_oauth_callbacks_total",
    "OAuth callback outcomes",
    ["provider", "outcome"]
)


def init_metrics(app_env: str, version: str):
    """Initialize application metrics with version info."""
    APP_INFO.info({
        "version": version,
        "environment": app_env,
    })
    logger.info("prometheus_metrics_initialized")


def get_metrics_text() -> str:
    """Generate Prometheus metrics text format."""
    return generate_latest(REGISTRY).decode("utf-8")
