"""
FastAPI application factory for the pick'em sync engine.

Creates the app with:
- Operator job routes (trigger, status, logs)
- Leaderboard read routes
- Middleware stack
- Health check endpoint
- Lifespan management: the sync runtime (scheduler, queue workers, store)
  starts and stops with the app
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from shared.config import get_settings
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server

from api.dependencies import init_dependencies, reset_dependencies
from api.middleware import setup_middleware
from api.routes.jobs import router as jobs_router
from api.routes.leaderboard import router as leaderboard_router
from scheduler.runtime import SyncRuntime

logger = get_logger(__name__)


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """No-op lifespan for testing without DB/Redis."""
    yield


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the sync runtime with the API and stop it on shutdown."""
    settings = get_settings()
    setup_logging("api", settings=settings)
    start_metrics_server(settings=settings)

    runtime = SyncRuntime(settings)
    await runtime.start()
    init_dependencies(runtime)
    logger.info("api_service_started", host=settings.api_host, port=settings.api_port)

    yield

    await runtime.stop()
    reset_dependencies()
    logger.info("api_service_stopped")


def create_app(*, runtime: SyncRuntime | None = None, use_lifespan: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Passing ``runtime`` wires that instance in directly and skips the
    lifespan, which is how tests drive the routes.
    """
    if runtime is not None:
        init_dependencies(runtime)
        use_lifespan = False

    app = FastAPI(
        title="Pick'em Sync Engine",
        description="Feed synchronization, scoring and settlement for a prediction league",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else _noop_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    setup_middleware(app)

    app.include_router(jobs_router)
    app.include_router(leaderboard_router)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "sync-engine"}

    return app


def run() -> None:
    """Console entrypoint: serve the API (and the runtime it owns) with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("api.app:create_app", factory=True, host=settings.api_host, port=settings.api_port)
