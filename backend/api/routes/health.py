"""Health endpoints.

    GET /health          liveness, never touches dependencies
    GET /health/health   store (503 when down), Redis, scheduler
    GET /health/status   engine internals: running runs, circuits, retries, caches
"""

import platform
import sys
import time
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from app.dependencies import get_runtime
from app.runtime import Runtime

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("", response_model=dict[str, Any])
async def root(runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    """Liveness probe."""
    return {
        "app": runtime.settings.APP_NAME,
        "version": runtime.settings.APP_VERSION,
        "status": "ok",
    }


@router.get("/health", response_model=dict[str, Any])
async def health_check(runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    """Readiness: 503 if the store is unreachable. Redis problems only degrade."""
    checks: dict[str, str] = {}

    try:
        await runtime.repository.ping()
        checks["database"] = "ok"
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database health check failed", error=str(e))
        checks["database"] = "unavailable"

    if runtime.settings.REDIS_URL:
        client = aioredis.from_url(runtime.settings.REDIS_URL, socket_connect_timeout=2)
        try:
            checks["redis"] = "ok" if await client.ping() else "degraded"
        except (RedisError, OSError) as e:
            logger.warning("Redis health check failed", error=str(e))
            checks["redis"] = "unavailable"
        finally:
            await client.aclose()
    else:
        checks["redis"] = "disabled"

    checks["scheduler"] = "running" if runtime.scheduler.is_running else "stopped"

    if checks["database"] == "unavailable":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "checks": checks},
        )
    return {"status": "healthy", **checks}


@router.get("/status", response_model=dict[str, Any])
async def system_status(runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    """Uptime plus a snapshot of every engine component."""
    uptime_seconds = time.monotonic() - _start_time
    hours, remainder = divmod(int(uptime_seconds), 3600)
    minutes, seconds = divmod(remainder, 60)

    return {
        "app": runtime.settings.APP_NAME,
        "version": runtime.settings.APP_VERSION,
        "environment": runtime.settings.ENVIRONMENT,
        "started_at": _start_datetime,
        "uptime": f"{hours}h {minutes}m {seconds}s",
        "uptime_seconds": round(uptime_seconds, 1),
        "python": {
            "version": sys.version,
            "platform": platform.platform(),
        },
        "components": {
            "running_executions": len(runtime.engine.get_running_executions()),
            "scheduler": "running" if runtime.scheduler.is_running else "stopped",
            "event_bus": "running" if runtime.event_bus and runtime.event_bus.is_running else "disabled",
            "circuits": runtime.breaker.get_status(),
            "retries": runtime.engine.retry.get_statistics(),
            "condition_cache": runtime.engine.evaluator.get_cache_stats(),
            "notifications": runtime.notifier.get_status(),
            "action_types": runtime.registry.available_types,
        },
    }
