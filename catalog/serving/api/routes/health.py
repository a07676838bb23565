"""
Health Check Endpoints

Liveness and readiness probes. The database probe is raced against
`POSTGRES_HEALTH_TIMEOUT_SECONDS` and reports `down` instead of hanging.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Response
from pydantic import BaseModel
from redis.exceptions import RedisError

from catalog.config import get_settings
from catalog.database.connection import check_database_health
from catalog.serving.cache import get_redis

settings = get_settings()
router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


async def _redis_check() -> Dict[str, Any]:
    if not settings.redis.enabled:
        return {"status": "disabled"}
    client = get_redis()
    if client is None:
        return {"status": "down", "error": "not initialized"}
    try:
        await client.ping()
    except RedisError as e:
        return {"status": "down", "error": str(e)}
    return {"status": "up"}


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Comprehensive health check endpoint.

    The database is required; Redis only degrades the status.
    """
    checks = {
        "database": await check_database_health(),
        "redis": await _redis_check(),
    }

    overall_status = "healthy"
    if checks["database"]["status"] != "up":
        overall_status = "unhealthy"
    elif checks["redis"]["status"] == "down":
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.app_env,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """Returns 200 while the process is running."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(response: Response) -> Dict[str, Any]:
    """Returns 503 until the database answers within the probe timeout."""
    db_health = await check_database_health()
    if db_health["status"] != "up":
        response.status_code = 503
        return {"status": "not_ready", "database": db_health}
    return {"status": "ready"}
