"""
Health check endpoints for the Machina API server.

Provides /health (liveness) and /ready (readiness) endpoints.
"""

from fastapi import APIRouter, Response, status

from machina.db.session import get_db_health
from machina.logging_config import get_logger
from machina.redis.client import get_redis_health
from machina.services.credential_vault import VaultNotConfiguredError, get_vault

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


def _vault_ready() -> bool:
    try:
        get_vault()
    except VaultNotConfiguredError:
        return False
    return True


@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict[str, str]:
    """Liveness probe. Returns 200 while the process is serving."""
    return {"status": "healthy"}


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready(response: Response) -> dict[str, str | dict[str, str]]:
    """Readiness probe: database, Redis and the credential vault."""
    checks: dict[str, str] = {
        "database": "healthy" if await get_db_health() else "unhealthy",
        "redis": "healthy" if await get_redis_health() else "unhealthy",
        "vault": "healthy" if _vault_ready() else "unhealthy",
    }

    if not all(v == "healthy" for v in checks.values()):
        logger.warning("Readiness check failed", checks=checks)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not ready", "checks": checks}

    return {"status": "ready", "checks": checks}
