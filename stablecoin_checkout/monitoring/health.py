"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Payment provider configuration
"""
from typing import Any, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the checkout's dependencies."""

    def __init__(self, settings: Settings, session_factory: async_sessionmaker[AsyncSession]):
        self.settings = settings
        self.session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    def check_provider_config(self) -> Dict[str, Any]:
        """Report whether payout and deposit settings are provisioned."""
        missing = [
            name
            for name in ("provider_api_key", "provider_account_id", "deposit_address")
            if not getattr(self.settings, name)
        ]
        return {
            "status": "healthy" if not missing else "degraded",
            "service": "provider",
            "missing": missing,
            "signature_verification": bool(self.settings.webhook_public_key),
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks: Dict[str, Any] = {}
        status = "healthy"

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": "unhealthy", "error": str(e)}
            status = "unhealthy"

        checks["provider"] = self.check_provider_config()
        if status == "healthy" and checks["provider"]["status"] != "healthy":
            status = "degraded"

        return {"status": status, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        return {"status": "healthy", "message": "Service is alive"}
