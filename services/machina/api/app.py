"""
FastAPI application factory for the Machina API server.

Uses lifespan handler for startup/shutdown with async resource management.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from machina.config import settings
from machina.db.session import close_db, init_db
from machina.logging_config import configure_logging, get_logger
from machina.redis.client import close_redis, init_redis
from machina.services.credential_vault import init_vault
from machina.services.deployment_orchestrator import init_orchestrator
from machina.store import init_record_store

from .health import router as health_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan handler for startup and shutdown."""
    # Startup
    configure_logging(
        json_logs=settings.json_logs, log_level=settings.log_level, app_name=settings.app_name
    )
    logger.info("Starting Machina API server", version="0.1.0")

    await init_db()
    logger.info("Database initialized")

    await init_redis()
    logger.info("Redis initialized")

    vault = init_vault()
    store = init_record_store()
    orchestrator = init_orchestrator(store, vault=vault)
    logger.info("Deployment orchestrator initialized")

    reconciler_task = None
    if settings.reconciler.enabled:
        from machina.services.reconciler import ProviderReconciler, run_reconciler

        reconciler_task = asyncio.create_task(
            run_reconciler(ProviderReconciler(store, vault=vault))
        )
        logger.info("Provider reconciler started")

    yield

    if reconciler_task is not None:
        reconciler_task.cancel()
        try:
            await reconciler_task
        except asyncio.CancelledError:
            pass
        logger.info("Provider reconciler stopped")

    # Shutdown
    logger.info("Shutting down Machina API server")
    await orchestrator.shutdown()
    await close_redis()
    await close_db()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Machina API",
        description="Machina - cloud machine provisioning through Terraform",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    # CORS middleware
    if settings.cors.allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.allow_origins,
            allow_credentials=settings.cors.allow_credentials,
            allow_methods=settings.cors.allow_methods,
            allow_headers=settings.cors.allow_headers,
        )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Bind a request ID into the log context for every request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", exc_info=exc, path=str(request.url.path))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # Health endpoints (no prefix)
    app.include_router(health_router)

    from machina.api.routers.deployments import router as deployments_router
    from machina.api.routers.machines import router as machines_router
    from machina.api.routers.providers import router as providers_router

    app.include_router(machines_router, prefix=settings.api_prefix)
    app.include_router(deployments_router, prefix=settings.api_prefix)
    app.include_router(providers_router, prefix=settings.api_prefix)

    return app


# Application instance
app = create_application()
