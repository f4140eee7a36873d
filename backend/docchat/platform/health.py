"""
Deployment health checks.

Provides health check functionality for the API service:
- Database connectivity
- Credential store (Redis) connectivity
- Environment variable validation (presence only, never values)
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from docchat.config.auth import EncryptionConfig
from docchat.database.session import get_engine

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = [
    "OIDC_ISSUER",
    "OIDC_CLIENT_ID",
    "OIDC_CLIENT_SECRET",
    "AUTH_SECRET",
    "SERVER_KEY",
]

OPTIONAL_ENV_VARS = [
    "DATABASE_URL",
    "REDIS_URL",
    "OIDC_REDIRECT_URI",
    "OIDC_POST_LOGOUT_REDIRECT_URI",
]


class HealthChecker:
    """Health check service for readiness probes."""

    def __init__(
        self,
        credential_store=None,
        engine_factory: Callable[[], Engine] = get_engine,
    ):
        self.credential_store = credential_store
        self._engine_factory = engine_factory

    def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict with 'status' (ok/error) and 'message'
        """
        try:
            with self._engine_factory().connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return {"status": "ok", "message": "Database connection successful"}
        except SQLAlchemyError as e:
            logger.error(
                "Database connection failed",
                extra={"error_type": type(e).__name__},
            )
            return {"status": "error", "message": "Database connection failed"}

    async def check_credential_store(self) -> Dict[str, Any]:
        if self.credential_store is None:
            return {"status": "error", "message": "Credential store not configured"}

        if await self.credential_store.ping():
            return {"status": "ok", "message": "Credential store reachable"}
        return {"status": "error", "message": "Credential store unreachable"}

    def check_environment_variables(self) -> Dict[str, Any]:
        """
        Check required environment variables are present.

        SERVER_KEY counts as missing while it holds the placeholder default.
        """
        present = []
        missing = []

        for var in REQUIRED_ENV_VARS:
            if var == "SERVER_KEY":
                configured = EncryptionConfig.from_env().is_configured
            else:
                configured = bool(os.getenv(var))
            (present if configured else missing).append(var)

        present.extend(var for var in OPTIONAL_ENV_VARS if os.getenv(var))

        return {
            "status": "ok" if not missing else "error",
            "present": present,
            "missing": missing,
            "message": f"{len(present)} vars present, {len(missing)} missing",
        }

    async def get_health_status(self) -> Dict[str, Any]:
        """
        Get comprehensive health status.

        Overall status is ok only if every component check passes.
        """
        checks = {
            "database": self.check_database(),
            "credential_store": await self.check_credential_store(),
            "environment": self.check_environment_variables(),
        }
        overall = "ok" if all(c["status"] == "ok" for c in checks.values()) else "degraded"

        return {
            "status": overall,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "docchat-api",
            "checks": checks,
        }

    def log_config_status(self) -> None:
        """Log configuration status on startup (NO secrets)."""
        env_check = self.check_environment_variables()
        logger.info("Configuration status", extra={
            "required_vars_missing": env_check["missing"],
            "vars_present": len(env_check["present"]),
        })
        if env_check["missing"]:
            logger.warning("Missing required environment variables", extra={
                "missing_vars": env_check["missing"]
            })


# Global health checker instance
_health_checker: Optional[HealthChecker] = None


def get_health_checker(credential_store=None) -> HealthChecker:
    """Get or create health checker instance."""
    global _health_checker
    if _health_checker is None:
        _health_checker = HealthChecker(credential_store=credential_store)
    return _health_checker
