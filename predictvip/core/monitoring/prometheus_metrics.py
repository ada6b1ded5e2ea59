"""
Prometheus metrics for the subscription service.
Covers webhook ingestion, lifecycle transitions, sweeps and notifications.
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, CONTENT_TYPE_LATEST, generate_latest
from fastapi import Response
import structlog

logger = structlog.get_logger(__name__)

# Create custom registry for our metrics
registry = CollectorRegistry()

# Webhook Metrics
webhook_events = Counter(
    'predictvip_webhook_events_total',
    'Total payment webhook events processed',
    ['event_type', 'outcome'],
    registry=registry
)

# Lifecycle Metrics
subscription_transitions = Counter(
    'predictvip_subscription_transitions_total',
    'Subscription status transitions applied',
    ['transition', 'source'],
    registry=registry
)

optimistic_conflicts = Counter(
    'predictvip_optimistic_conflicts_total',
    'Conditional writes that lost a race and were re-evaluated',
    ['operation'],
    registry=registry
)

# Sweep Metrics
sweep_runs = Counter(
    'predictvip_sweep_runs_total',
    'Expiry sweep runs',
    ['status'],
    registry=registry
)

sweep_last_counts = Gauge(
    'predictvip_sweep_last_count',
    'Counts from the most recent sweep',
    ['kind'],
    registry=registry
)

# Notification Metrics
notification_dispatch = Counter(
    'predictvip_notifications_total',
    'Notification requests emitted',
    ['channel', 'type', 'result'],
    registry=registry
)

# HTTP Metrics
http_requests_total = Counter(
    'predictvip_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=registry
)

http_request_duration = Histogram(
    'predictvip_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf')],
    registry=registry
)

# Health Check Metrics
health_check_duration = Histogram(
    'predictvip_health_check_duration_seconds',
    'Health check duration in seconds',
    ['check_type', 'service'],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, float('inf')],
    registry=registry
)

health_check_status = Gauge(
    'predictvip_health_check_status',
    'Health check status (1=healthy, 0=unhealthy)',
    ['service'],
    registry=registry
)


class MetricsCollector:
    """Centralized metrics collection and helper methods."""

    def __init__(self):
        self.registry = registry

    def get_metrics_response(self) -> Response:
        """Return Prometheus metrics as HTTP response."""
        metrics_data = generate_latest(self.registry)
        return Response(
            content=metrics_data,
            media_type=CONTENT_TYPE_LATEST
        )


# Global metrics collector instance
metrics = MetricsCollector()


def increment_webhook_events(event_type: str, outcome: str):
    """Increment webhook event counter."""
    webhook_events.labels(event_type=event_type, outcome=outcome).inc()


def increment_subscription_transition(transition: str, source: str):
    """Count a lifecycle transition, e.g. ("pending->active", "admin")."""
    subscription_transitions.labels(transition=transition, source=source).inc()
    logger.debug("subscription_transition_recorded", transition=transition, source=source)


def increment_optimistic_conflict(operation: str):
    optimistic_conflicts.labels(operation=operation).inc()


def record_sweep(status: str, warnings_sent: int = 0, expired: int = 0):
    """Record the outcome of one expiry sweep."""
    sweep_runs.labels(status=status).inc()
    if status == "success":
        sweep_last_counts.labels(kind="warnings_sent").set(warnings_sent)
        sweep_last_counts.labels(kind="expired").set(expired)


def increment_notification(channel: str, type: str, result: str):
    """Count a notification request by channel (email, in_app) and result."""
    notification_dispatch.labels(channel=channel, type=type, result=result).inc()
    if result == "failed":
        logger.warning("notification_failure_recorded", channel=channel, type=type)


def increment_http_requests(method: str, endpoint: str, status_code: str):
    """Increment HTTP request counter."""
    http_requests_total.labels(method=method, endpoint=endpoint, status_code=status_code).inc()


def observe_http_request_duration(method: str, endpoint: str, duration_seconds: float):
    """Record HTTP request duration."""
    http_request_duration.labels(method=method, endpoint=endpoint).observe(duration_seconds)


def observe_health_check_duration(check_type: str, service: str, duration_seconds: float):
    """Record health check duration."""
    health_check_duration.labels(check_type=check_type, service=service).observe(duration_seconds)


def set_health_check_status(service: str, is_healthy: bool):
    """Set health check status."""
    health_check_status.labels(service=service).set(1 if is_healthy else 0)
