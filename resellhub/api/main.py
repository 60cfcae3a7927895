"""
Main FastAPI application.

Reconciliation API with:
- Explicit service lifecycle (opened in the lifespan, closed at shutdown)
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import httpx
import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from resellhub.config import Settings, get_settings
from resellhub.database.connection import Database
from resellhub.monitoring.logging import setup_logging

from .dependencies import Services, build_services
from .routes import admin_router, catalog_router, monitoring_router, webhook_router

logger = structlog.get_logger(__name__)


def _lifespan(settings: Settings, services: Optional[Services]) -> Any:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Opens the database, HTTP client and Redis client at startup and
        closes them at shutdown. Pre-built services are used as given.
        """
        logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)
        if services is not None:
            yield
            return

        database = Database.from_settings(settings)
        http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
        redis_client: Optional[aioredis.Redis] = None
        if settings.webhook_log_enabled:
            redis_client = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )

        app.state.services = build_services(settings, database, http_client, redis_client)
        try:
            yield
        finally:
            logger.info("application_shutdown")
            await http_client.aclose()
            if redis_client is not None:
                await redis_client.aclose()
            await database.dispose()

    return lifespan


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings; loaded from the environment if omitted
        services: Pre-built services, skipping the lifespan wiring

    Returns:
        FastAPI: Configured application
    """
    settings = settings or (services.settings if services else get_settings())
    setup_logging(settings)

    app = FastAPI(
        title="resellhub",
        description=(
            "External reconciliation layer of a digital goods reseller: payment webhook "
            "verification, wallet ledger, provider clients and catalog sync."
        ),
        version="1.0.0",
        lifespan=_lifespan(settings, services),
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    if services is not None:
        app.state.services = services

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Add request ID to all requests for tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(webhook_router)
    app.include_router(catalog_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "resellhub.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
