"""
Sentry integration for the subscription service.
Provides exception tracking and performance monitoring.
"""

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
import structlog

from predictvip.core.settings import settings

logger = structlog.get_logger(__name__)

_SKIPPED_TRANSACTIONS = ["/healthz", "/readyz", "/metrics"]
_SCRUBBED_HEADERS = ["authorization", "x-paystack-signature", "x-cron-secret"]


def init_sentry():
    """Initialize Sentry for the API process."""
    if not settings.sentry_dsn:
        logger.info("Sentry DSN not configured, skipping Sentry initialization")
        return

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.release_version,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        profiles_sample_rate=settings.sentry_profiles_sample_rate,
        attach_stacktrace=True,
        send_default_pii=False,  # payer e-mails stay out of Sentry
        max_breadcrumbs=50,
        integrations=[
            FastApiIntegration(
                failed_request_status_codes={*range(500, 600)},
            ),
            SqlalchemyIntegration(),
            LoggingIntegration(level=None, event_level=None),
        ],
        before_send=_before_send_filter,
        before_send_transaction=_before_send_transaction_filter,
    )

    sentry_sdk.set_tag("service", "predictvip-subscriptions")
    sentry_sdk.set_tag("component", "api")

    logger.info(
        "sentry_initialized",
        environment=settings.environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )


def init_sentry_worker():
    """Initialize Sentry for the Celery worker running the expiry sweep."""
    if not settings.sentry_dsn:
        return

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.release_version,
        traces_sample_rate=0.05,  # Lower sampling for workers
        attach_stacktrace=True,
        send_default_pii=False,
        integrations=[
            CeleryIntegration(
                monitor_beat_tasks=True,
                propagate_traces=True,
            ),
            LoggingIntegration(level=None, event_level=None),
        ],
        before_send=_before_send_filter,
    )

    sentry_sdk.set_tag("service", "predictvip-subscriptions")
    sentry_sdk.set_tag("component", "worker")

    logger.info("sentry_worker_initialized", environment=settings.environment)


def _before_send_filter(event, hint):
    """Scrub secrets and drop health check noise."""
    headers = event.get("request", {}).get("headers", {})
    for header in list(headers):
        if header.lower() in _SCRUBBED_HEADERS:
            headers[header] = "[Filtered]"

    if event.get("transaction") in _SKIPPED_TRANSACTIONS:
        return None

    return event


def _before_send_transaction_filter(event, hint):
    """Filter transactions before sending to Sentry."""
    if event.get("transaction") in _SKIPPED_TRANSACTIONS:
        return None
    return event
