"""
Structured logging setup shared by the API and the worker.
"""
import logging

import structlog

from predictvip.core.settings import settings


def configure_logging(log_level: str = None) -> None:
    """Configure structlog for JSON output at the configured level."""
    level_name = (log_level or settings.log_level or "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
