"""
Health check endpoints.

Provides:
- /health - Basic health check
- /health/ready - Readiness check (dependencies)
- /health/live - Liveness check
- /health/detailed - Dependencies plus system metrics and patrol status
"""

from fastapi import APIRouter, Request, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime, timezone
from typing import Dict, Any, Tuple
import logging

import psutil
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from coordinator.config import settings
from coordinator.database import engine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _uses_redis() -> bool:
    return settings.rate_limit_storage_uri.startswith(("redis://", "rediss://"))


async def _check_dependencies() -> Tuple[Dict[str, Any], Dict[str, str]]:
    """Database always; Redis only when it backs the rate limiter."""
    checks: Dict[str, Any] = {"database": False}
    errors: Dict[str, str] = {}

    try:
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            result.fetchone()
        checks["database"] = True
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Database health check failed: {e}")
        errors["database"] = str(e)

    if _uses_redis():
        checks["redis"] = False
        redis_client = aioredis.from_url(settings.rate_limit_storage_uri)
        try:
            await redis_client.ping()
            checks["redis"] = True
        except (RedisError, OSError) as e:
            logger.warning(f"Redis health check failed: {e}")
            errors["redis"] = str(e)
        finally:
            await redis_client.aclose()

    return checks, errors


@router.get("/health")
async def health_check():
    """Basic health check for load balancers.

    Returns 200 if the service is running.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "coordinator",
        "version": settings.version,
        "environment": settings.effective_env,
    }


@router.get("/health/ready")
async def readiness_check(response: Response):
    """Readiness check with dependency validation.

    Returns 503 if any dependency is unavailable.
    """
    checks, errors = await _check_dependencies()
    healthy = not errors

    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    result = {
        "status": "ready" if healthy else "not_ready",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if errors:
        result["errors"] = errors

    return result


@router.get("/health/live")
async def liveness_check():
    """Liveness check. Always returns 200 if the process is running."""
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/detailed")
async def detailed_health_check(request: Request, response: Response):
    """Detailed health check with system metrics and patrol loop status."""
    checks, errors = await _check_dependencies()
    healthy = not errors

    system_metrics = {
        "cpu_percent": psutil.cpu_percent(interval=0.1),
        "memory_percent": psutil.virtual_memory().percent,
        "disk_percent": psutil.disk_usage("/").percent,
    }

    patrol_loop = getattr(request.app.state, "patrol_loop", None)
    patrol = {
        "enabled": settings.patrol_enabled,
        "running": bool(patrol_loop and patrol_loop.running),
        "interval_seconds": settings.patrol_interval_seconds,
    }

    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "system": system_metrics,
        "patrol": patrol,
        "errors": errors if errors else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.version,
        "environment": settings.effective_env,
    }
