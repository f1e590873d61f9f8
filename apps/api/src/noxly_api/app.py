from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from noxly_api.core.settings import settings
from noxly_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import PendingUsageSweepWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweep_worker = PendingUsageSweepWorker(
        session_factory=_session_factory,
        interval_seconds=settings.pending_sweep_interval_seconds,
        grace_seconds=settings.pending_sweep_grace_seconds,
        batch_size=settings.pending_sweep_batch_size,
    )
    app.state.pending_sweep_worker = sweep_worker

    sweep_enabled = settings.pending_sweep_worker_enabled
    if sweep_enabled:
        sweep_worker.start()
        logger.info(
            "Pending usage sweep worker enabled",
            interval_seconds=sweep_worker.interval_seconds,
            grace_seconds=settings.pending_sweep_grace_seconds,
        )
    else:
        logger.info(
            "Pending usage sweep worker disabled",
            reason="pending_sweep_worker_enabled is false",
        )

    try:
        yield
    finally:
        if sweep_enabled and sweep_worker.is_running:
            await sweep_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the NOXLY FastAPI service."""
    configure_logging(
        service_name="noxly-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="NOXLY API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    if settings.cors_allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    configure_tracing(
        app,
        service_name="noxly-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
