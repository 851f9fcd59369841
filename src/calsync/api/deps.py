"""FastAPI dependency injection for the caller identity and sync services.

Authentication happens upstream; the gateway forwards the authenticated
user as the X-User-ID header. Services are created in the application
lifespan and stored on app.state.
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from src.calsync.sync.service import SyncService
from src.calsync.sync.webhooks import WebhookManager


async def get_current_user_id(
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
) -> str:
    """Return the authenticated user id forwarded by the gateway.

    Raises:
        HTTPException(401): If the header is missing or blank.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-ID header",
        )
    return x_user_id.strip()


def get_sync_service(request: Request) -> SyncService:
    """Retrieve SyncService from app.state, 503 if not available."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync service not initialized",
        )
    return service


def get_webhook_manager(request: Request) -> WebhookManager:
    """Retrieve WebhookManager from app.state, 503 if not available."""
    manager = getattr(request.app.state, "webhook_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook manager not initialized",
        )
    return manager
