"""
Monitoring and observability package for the subscription service.
"""

from .sentry_config import init_sentry, init_sentry_worker
from .prometheus_metrics import (
    metrics,
    increment_webhook_events,
    increment_subscription_transition,
    increment_optimistic_conflict,
    record_sweep,
    increment_notification,
    increment_http_requests,
    observe_http_request_duration,
)

__all__ = [
    "init_sentry",
    "init_sentry_worker",
    "metrics",
    "increment_webhook_events",
    "increment_subscription_transition",
    "increment_optimistic_conflict",
    "record_sweep",
    "increment_notification",
    "increment_http_requests",
    "observe_http_request_duration",
]
