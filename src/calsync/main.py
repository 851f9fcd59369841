"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events wiring the sync services and scheduler, and the v1 API
router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.calsync.config import Settings, get_settings
from src.calsync.core.database import close_db, get_session, init_db
from src.calsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.calsync.core.redis import close_redis, get_redis_pool
from src.calsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.calsync.api.v1.router import router as v1_router
from src.calsync.sync import (
    EventSyncHooks,
    SyncRepository,
    SyncScheduler,
    SyncService,
    WebhookManager,
)
from src.calsync.sync.credentials import StoredCredentialProvider
from src.calsync.sync.locks import LocalRunLock, RedisRunLock, RunLock
from src.calsync.sync.providers import build_default_registry

logger = structlog.get_logger(__name__)


def _build_run_lock(settings: Settings) -> RunLock:
    if settings.USE_REDIS_LOCKS:
        return RedisRunLock(
            get_redis_pool(),
            ttl_seconds=settings.STALE_OPERATION_TIMEOUT_MINUTES * 60,
        )
    return LocalRunLock()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry, and sync services; tear down on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Sync wiring ─────────────────────────────────────────────────────
    repository = SyncRepository(get_session)
    registry = build_default_registry(settings)
    credentials = StoredCredentialProvider()
    webhook_manager = WebhookManager(repository, registry, credentials, settings)
    sync_service = SyncService(
        repository,
        registry,
        credential_provider=credentials,
        run_lock=_build_run_lock(settings),
        webhook_manager=webhook_manager,
        settings=settings,
    )
    scheduler = SyncScheduler(sync_service, webhook_manager, settings)

    app.state.sync_repository = repository
    app.state.provider_registry = registry
    app.state.webhook_manager = webhook_manager
    app.state.sync_service = sync_service
    app.state.event_hooks = EventSyncHooks(sync_service)
    app.state.sync_scheduler = scheduler

    scheduler.start()
    logger.info(
        "app.started",
        environment=settings.ENVIRONMENT.value,
        providers=[p.value for p in registry.provider_types()],
        redis_locks=settings.USE_REDIS_LOCKS,
    )

    yield

    scheduler.stop()
    await app.state.event_hooks.drain()
    await sync_service.drain()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Calsync API",
        version="0.1.0",
        description="Bidirectional calendar synchronization service",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
