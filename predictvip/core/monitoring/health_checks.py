"""
Health checks for the record store and the Celery broker.
"""

import asyncio
import time
from typing import Dict, Any, Optional
import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from redis import Redis
from redis.exceptions import RedisError

from predictvip.core.settings import settings
from .prometheus_metrics import observe_health_check_duration, set_health_check_status

logger = structlog.get_logger(__name__)


class HealthCheckResult:
    """Result of a health check with timing and status information."""

    def __init__(self, service: str, healthy: bool, duration_ms: float,
                 details: Optional[Dict[str, Any]] = None, error: Optional[str] = None):
        self.service = service
        self.healthy = healthy
        self.duration_ms = duration_ms
        self.details = details or {}
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "healthy": self.healthy,
            "duration_ms": round(self.duration_ms, 2),
            "details": self.details,
            "error": self.error,
        }


class HealthChecker:
    """Readiness checks with latency thresholds and consecutive-failure counts."""

    def __init__(self):
        # Health check thresholds (in milliseconds)
        self.thresholds = {
            "record_store": 1000,
            "redis": 500,
        }

        # Fail readiness after this many consecutive failures
        self.failure_thresholds = {
            "record_store": 3,
            "redis": 3,
        }

        self.failure_counts = {service: 0 for service in self.thresholds.keys()}

    def _finish(self, service: str, start_time: float, details: Dict[str, Any] = None,
                error: Optional[str] = None) -> HealthCheckResult:
        duration_ms = (time.time() - start_time) * 1000
        healthy = error is None and duration_ms < self.thresholds[service]

        if healthy:
            self.failure_counts[service] = 0
        else:
            self.failure_counts[service] += 1

        observe_health_check_duration("readiness", service, duration_ms / 1000)
        set_health_check_status(service, healthy)

        if error:
            logger.warning("Health check failed", service=service, error=error)

        return HealthCheckResult(
            service=service,
            healthy=healthy,
            duration_ms=duration_ms,
            details=details,
            error=error,
        )

    async def check_record_store(self) -> HealthCheckResult:
        """Round-trip to whichever record store is configured."""
        start_time = time.time()
        details = {"backend": settings.record_store, "threshold_ms": self.thresholds["record_store"]}

        if settings.record_store == "supabase":
            from predictvip.core.supa_request import service_client
            try:
                service_client().table("subscriptions").select("id").limit(1).execute()
            except Exception as e:
                return self._finish("record_store", start_time, details, error=str(e))
            return self._finish("record_store", start_time, {**details, "query_test": "passed"})

        from predictvip.db.session import engine
        try:
            with engine.connect() as connection:
                row = connection.execute(text("SELECT 1")).fetchone()
        except SQLAlchemyError as e:
            return self._finish("record_store", start_time, details, error=str(e))

        if not row or row[0] != 1:
            return self._finish("record_store", start_time, details, error="Database query test failed")
        return self._finish("record_store", start_time, {**details, "query_test": "passed"})

    async def check_redis(self) -> HealthCheckResult:
        """Ping the Celery broker that schedules the expiry sweep."""
        start_time = time.time()
        details = {"threshold_ms": self.thresholds["redis"]}
        redis_client = Redis.from_url(settings.redis_url, socket_timeout=2)

        try:
            if not redis_client.ping():
                return self._finish("redis", start_time, details, error="Redis ping failed")
        except RedisError as e:
            return self._finish("redis", start_time, details, error=str(e))
        finally:
            redis_client.close()

        return self._finish("redis", start_time, {**details, "ping_test": "passed"})

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks and return comprehensive status."""
        start_time = time.time()

        checks = await asyncio.gather(
            self.check_record_store(),
            self.check_redis(),
        )

        results = {check.service: check.to_dict() for check in checks}
        overall_healthy = all(check.healthy for check in checks)

        for service, count in self.failure_counts.items():
            threshold = self.failure_thresholds.get(service, 3)
            if count >= threshold:
                overall_healthy = False
                results[service]["consecutive_failures"] = count
                results[service]["failure_threshold"] = threshold

        return {
            "healthy": overall_healthy,
            "timestamp": time.time(),
            "total_duration_ms": round((time.time() - start_time) * 1000, 2),
            "services": results,
            "failure_counts": self.failure_counts,
        }


# Global health checker instance
health_checker = HealthChecker()


async def basic_health_check() -> Dict[str, Any]:
    """Basic health check for /healthz endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "service": "predictvip-subscriptions",
        "version": settings.app_version,
    }


async def readiness_check() -> Dict[str, Any]:
    """Comprehensive readiness check for /readyz endpoint."""
    return await health_checker.check_all()
