"""
Celery tasks for scheduled subscription maintenance.
"""
import asyncio
from typing import Dict, Any

from celery import Celery
from celery.schedules import crontab
import structlog

from predictvip.core.settings import settings
from predictvip.api.services.expiry import ExpirySweeper
from predictvip.db.store import open_record_store

# Initialize Celery app
celery_app = Celery("predictvip_worker")
celery_app.conf.broker_url = settings.redis_url
celery_app.conf.result_backend = settings.redis_url
celery_app.conf.task_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.result_serializer = "json"
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

logger = structlog.get_logger(__name__)


@celery_app.task
def check_subscription_expiry() -> Dict[str, Any]:
    """Daily sweep: expiry warnings, then expiry of overdue subscriptions."""
    with open_record_store() as store:
        result = asyncio.run(ExpirySweeper(store).run())

    logger.info("Scheduled expiry sweep completed", **result.to_response())
    return result.to_response()


# Periodic tasks schedule
celery_app.conf.beat_schedule = {
    "check-subscription-expiry": {
        "task": "predictvip.worker.tasks.check_subscription_expiry",
        "schedule": crontab(hour=settings.sweep_hour_utc, minute=0),
    },
}
