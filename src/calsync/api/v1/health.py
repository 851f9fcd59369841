"""Liveness and readiness probes."""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.calsync.config import get_settings
from src.calsync.core.database import get_engine
from src.calsync.core.redis import ping_redis

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    return {"status": "ok", "environment": get_settings().ENVIRONMENT.value}


async def _database_error() -> str | None:
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        return str(exc)
    return None


@router.get("/health/ready")
async def readiness_check(request: Request):
    """200 once the sync store (and Redis, when it backs run locks) answers.

    Scheduler state is reported but does not affect readiness: a replica
    with SCHEDULER_ENABLED off still serves run and webhook requests.
    """
    settings = get_settings()
    checks: dict[str, str] = {}
    ready = True

    db_error = await _database_error()
    checks["database"] = "ok" if db_error is None else f"error: {db_error}"
    ready &= db_error is None

    if settings.USE_REDIS_LOCKS:
        redis_error = await ping_redis()
        checks["redis"] = "ok" if redis_error is None else f"error: {redis_error}"
        ready &= redis_error is None
    else:
        checks["redis"] = "disabled"

    scheduler = getattr(request.app.state, "sync_scheduler", None)
    if scheduler is None or not settings.SCHEDULER_ENABLED:
        checks["scheduler"] = "disabled"
    else:
        checks["scheduler"] = "running" if scheduler.running else "stopped"

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "degraded", "checks": checks},
    )
