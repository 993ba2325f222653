"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Redis connectivity (when the webhook replay cache is configured)
- Notification dispatcher workers
"""
from typing import TYPE_CHECKING, Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

if TYPE_CHECKING:
    from orderflow.integrations.notifications import NotificationDispatcher

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the order service's dependencies.

    Redis is optional: without a client the check reports ``disabled`` and
    does not affect readiness.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: Optional[aioredis.Redis] = None,
        notifier: Optional["NotificationDispatcher"] = None,
    ) -> None:
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.notifier = notifier

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if self.redis_client is None:
            return {"status": "disabled", "service": "redis"}
        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    def check_notifications(self) -> Dict[str, Any]:
        """
        Check that notification workers are consuming the queue.

        Raises:
            HealthCheckError: If the dispatcher is not running
        """
        if self.notifier is None:
            return {"status": "disabled", "service": "notifications"}
        if not self.notifier.is_running:
            raise HealthCheckError("Notification dispatcher is not running")
        return {
            "status": "healthy",
            "service": "notifications",
            "queue_depth": self.notifier.queue.qsize(),
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("redis", self.check_redis),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        try:
            checks["notifications"] = self.check_notifications()
        except HealthCheckError as e:
            checks["notifications"] = {"status": "unhealthy", "service": "notifications", "error": str(e)}
            all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: every dependency must be reachable."""
        return await self.check_all()
