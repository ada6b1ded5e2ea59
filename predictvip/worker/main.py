"""
Worker main entry point for scheduled subscription maintenance.
"""
import structlog
from predictvip.worker.tasks import celery_app
from predictvip.core.log_config import configure_logging
from predictvip.core.monitoring import init_sentry_worker

configure_logging()

# Initialize Sentry for worker
init_sentry_worker()

logger = structlog.get_logger(__name__)

if __name__ == '__main__':
    logger.info("Starting PredictVIP worker")
    celery_app.start()
