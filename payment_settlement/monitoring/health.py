"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Gateway credentials and callback signing secret are configured
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_settlement.config import Settings, get_settings
from payment_settlement.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    The gateway itself is not probed: a settlement instance that cannot sign
    or authenticate is unready, but gateway reachability is reported through
    the circuit breaker metrics instead.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_gateway_config(self) -> Dict[str, Any]:
        """
        Check gateway credentials and signing secret are present.

        Raises:
            HealthCheckError: If either is missing
        """
        missing = []
        if not self.settings.gateway_key_id or not self.settings.gateway_key_secret:
            missing.append("gateway_credentials")
        if not self.settings.signing_secret:
            missing.append("signing_secret")

        if missing:
            logger.error("gateway_config_health_check_failed", missing=missing)
            raise HealthCheckError(f"Gateway configuration incomplete: {', '.join(missing)}")

        return {
            "status": "healthy",
            "service": "gateway",
            "message": "Gateway credentials configured",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        try:
            checks["gateway"] = await self.check_gateway_config()
        except HealthCheckError as e:
            checks["gateway"] = {
                "status": "unhealthy",
                "service": "gateway",
                "error": str(e),
            }
            all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe endpoint."""
        return await self.check_all()
