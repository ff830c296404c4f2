"""Health check endpoints with graceful degradation."""

import asyncio
import logging
import shutil
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from app.config import Settings, get_settings
from app.rate_limit import limiter
from app.services.pipeline_lock import is_pipeline_busy

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["health"])


class ServiceStatus(BaseModel):
    """Status of an individual service."""
    name: str
    status: str  # "healthy", "unhealthy"
    message: Optional[str] = None


class HealthCheck(BaseModel):
    """Overall health check response."""
    status: str  # "healthy", "degraded", "unhealthy"
    version: str
    redis: str
    app_root: str
    tools: Dict[str, bool]
    pipeline_busy: Optional[bool] = None  # None when Redis is unreachable


async def check_redis() -> ServiceStatus:
    """Check Redis connectivity with graceful handling."""
    try:
        from app.services.redis_manager import get_async_client
        redis_client = await get_async_client()
        await redis_client.ping()
        return ServiceStatus(name="redis", status="healthy")
    except Exception as e:
        logger.debug(f"Redis health check failed: {e}")
        return ServiceStatus(name="redis", status="unhealthy", message=str(e))


def check_app_root(settings: Settings) -> ServiceStatus:
    root = settings.app_root_path
    if root.is_dir():
        return ServiceStatus(name="app_root", status="healthy")
    return ServiceStatus(name="app_root", status="unhealthy", message=f"{root} is not a directory")


def required_tools(settings: Settings) -> List[str]:
    tools = ["tar", "unzip", "unrar", settings.copy_tool]
    for command in (settings.install_command, settings.codegen_command):
        if command and command[0] not in tools:
            tools.append(command[0])
    return tools


def check_tools(settings: Settings) -> Dict[str, bool]:
    """Which external utilities are on PATH."""
    return {tool: shutil.which(tool) is not None for tool in required_tools(settings)}


@router.get("", response_model=HealthCheck)
async def health_check(settings: Settings = Depends(get_settings)) -> HealthCheck:
    """
    Check health of Redis, the application root and the external tools.

    Missing tools only degrade the service: each one disables a single
    archive format or deploy step.
    """
    redis_status = await check_redis()
    root_status = check_app_root(settings)
    tools = check_tools(settings)

    pipeline_busy = None
    if redis_status.status == "healthy":
        pipeline_busy = await asyncio.to_thread(is_pipeline_busy)

    if redis_status.status != "healthy" or root_status.status != "healthy":
        overall = "unhealthy"
    elif not all(tools.values()):
        overall = "degraded"
    else:
        overall = "healthy"

    return HealthCheck(
        status=overall,
        version=settings.app_version,
        redis=redis_status.status,
        app_root=root_status.status,
        tools=tools,
        pipeline_busy=pipeline_busy,
    )


@router.get("/live")
async def liveness() -> dict:
    """
    Liveness probe.

    Just confirms the application process is running and can respond to HTTP.
    This should NOT check external dependencies - that's what readiness is for.
    """
    return {"status": "alive"}


@router.get("/ready")
async def readiness(settings: Settings = Depends(get_settings)) -> dict:
    """
    Readiness probe.

    Uploads and deploys need Redis for status and locking, and an existing
    application root to write into.
    """
    redis_status = await check_redis()
    if redis_status.status != "healthy":
        raise HTTPException(
            status_code=503,
            detail=f"Redis not ready: {redis_status.message}"
        )

    root_status = check_app_root(settings)
    if root_status.status != "healthy":
        raise HTTPException(status_code=503, detail=root_status.message)

    return {"status": "ready"}


@router.get("/tools")
@limiter.limit("60/minute")
async def tools_health(request: Request, settings: Settings = Depends(get_settings)) -> dict:
    """Availability of each external tool the pipelines shell out to."""
    return {"tools": check_tools(settings)}
