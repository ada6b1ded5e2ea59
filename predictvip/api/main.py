"""
FastAPI application setup with monitoring, rate limiting and error handling.
"""
import time

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from prometheus_fastapi_instrumentator import Instrumentator

from predictvip.core.settings import settings
from predictvip.core.log_config import configure_logging
from predictvip.core.exceptions import (
    PredictVipException,
    predictvip_exception_handler,
    http_exception_handler,
    request_validation_exception_handler,
    general_exception_handler,
)
from predictvip.core.monitoring import (
    init_sentry,
    metrics,
    increment_http_requests,
    observe_http_request_duration
)
from predictvip.core.monitoring.health_checks import basic_health_check, readiness_check

configure_logging()

logger = structlog.get_logger()

if settings.enable_rate_limiting:
    limiter = Limiter(
        key_func=get_remote_address,
        storage_uri=settings.redis_url,
        default_limits=[settings.global_rate_limit],
    )
    logger.info("Rate limiting enabled with Redis")
else:
    logger.info("Rate limiting disabled via configuration")
    limiter = None


def rate_limited(limit: str):
    """Apply a slowapi limit when rate limiting is enabled."""
    def decorator(func):
        if limiter is None:
            return func
        return limiter.limit(limit)(func)
    return decorator


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="PredictVIP Subscriptions API",
        description="Subscription lifecycle and Paystack payment reconciliation",
        version=settings.app_version,
        docs_url="/docs" if settings.enable_docs else None,
        redoc_url="/redoc" if settings.enable_docs else None,
    )

    if limiter is not None:
        app.state.limiter = limiter
        app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    setup_middleware(app)
    setup_monitoring(app)
    setup_exception_handlers(app)
    setup_routers(app)
    setup_event_handlers(app)

    return app


def setup_middleware(app: FastAPI):
    """Setup CORS; Paystack and cron callers are server-to-server and unaffected."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"] if settings.is_production else ["*"],
        max_age=3600 if settings.is_production else 600,
    )


def setup_monitoring(app: FastAPI):
    """Setup Sentry, request metrics and the Prometheus endpoint."""

    init_sentry()

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        # Route template keeps label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        increment_http_requests(request.method, endpoint, str(response.status_code))
        observe_http_request_duration(request.method, endpoint, time.time() - start_time)

        return response

    if settings.enable_metrics:
        instrumentator = Instrumentator(
            should_group_status_codes=False,
            should_ignore_untemplated=True,
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/metrics", "/healthz", "/readyz"],
            inprogress_name="predictvip_requests_inprogress",
            inprogress_labels=True,
        )
        instrumentator.instrument(app)

    @app.get("/metrics")
    async def get_metrics():
        """Expose Prometheus metrics."""
        return metrics.get_metrics_response()


def setup_exception_handlers(app: FastAPI):
    app.add_exception_handler(PredictVipException, predictvip_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)


def setup_routers(app: FastAPI):
    """Setup API routers and health endpoints."""

    from predictvip.api.routers import admin, jobs, subscriptions, webhooks

    app.include_router(webhooks.router, prefix="/api")
    app.include_router(admin.router, prefix="/api")
    app.include_router(jobs.router, prefix="/api")
    app.include_router(subscriptions.router, prefix="/api")

    @app.get("/healthz")
    @rate_limited("200/minute")
    async def health_check(request: Request):
        """Basic health check endpoint."""
        return await basic_health_check()

    @app.get("/readyz")
    @rate_limited("100/minute")
    async def readiness_check_endpoint(request: Request):
        """Readiness check with record store and broker verification."""
        logger.info("Readiness check requested", remote_addr=get_remote_address(request))
        return await readiness_check()

    @app.get("/")
    @rate_limited("60/minute")
    async def root(request: Request):
        """Root endpoint with API information."""
        return {
            "message": "PredictVIP Subscriptions API",
            "version": settings.app_version,
            "docs": "/docs" if settings.enable_docs else "Contact admin for API documentation",
        }


def setup_event_handlers(app: FastAPI):
    """Setup application event handlers."""

    @app.on_event("startup")
    async def startup_event():
        logger.info("PredictVIP API starting up",
                    environment=settings.environment,
                    record_store=settings.record_store)

        for issue in settings.validate_production_config():
            logger.warning("Production configuration issue", issue=issue)

        if settings.record_store == "sql":
            from predictvip.db.session import create_db_and_tables
            create_db_and_tables()

        logger.info("PredictVIP API started successfully")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("PredictVIP API shutting down")


# Create application instance
app = create_application()
