"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.v1.router import api_router
from app.config import get_settings
from app.rate_limit import limiter
from app.services.errors import PipelineError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan handler for startup/shutdown events."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    root = settings.app_root_path
    if not root.is_dir():
        logger.warning(f"Application root {root} does not exist - deploys will fail")
    else:
        logger.info(f"Deploying into {root}, extracting into {settings.extraction_dir}")

    # Check Redis availability (non-blocking)
    from app.api.v1.health import check_redis, check_tools
    redis_status = await check_redis()
    if redis_status.status == "healthy":
        logger.info("Redis available")
    else:
        logger.warning(f"Redis not available - uploads and deploys will fail: {redis_status.message}")

    missing = [tool for tool, found in check_tools(settings).items() if not found]
    if missing:
        logger.warning(f"External tools not found on PATH: {', '.join(missing)}")

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application")
    from app.services.redis_manager import close_all_async, close_all_sync
    await close_all_async()
    close_all_sync()


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Render pipeline failures as ``{status: "error", error: ...}``."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "error": exc.message, **exc.payload},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Upload a system archive, extract it, and deploy it over the "
        "running application.",
        openapi_url=f"{settings.api_prefix}/openapi.json",
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        lifespan=lifespan,
    )

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(PipelineError, pipeline_error_handler)

    # CORS middleware - configurable via CORS_ORIGINS env variable (comma-separated)
    default_origins = [
        "http://localhost:3000",
        "http://localhost:5173",  # Vite dev server
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]
    extra_origins = [
        o.strip() for o in settings.cors_origins.split(",") if o.strip()
    ] if settings.cors_origins else []
    app.add_middleware(
        CORSMiddleware,
        allow_origins=default_origins + extra_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    # Include API routes
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/")
    async def root() -> dict:
        """Root endpoint returning API information."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": f"{settings.api_prefix}/docs",
        }

    return app


app = create_app()
