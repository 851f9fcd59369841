"""Calendar sync API endpoints.

Provides REST endpoints for:
- Sync config CRUD (connect, list, update, disconnect a provider calendar)
- Manual runs, credential validation, and operation history
- Push-notification channel management per config
- Cron-triggered webhook renewal
- Inbound provider push notifications

All config endpoints are scoped to the caller's X-User-ID. The SyncService
and WebhookManager are read from app.state (503 if not initialized).
"""

from __future__ import annotations

from typing import Any, NoReturn

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import Response
from pydantic import BaseModel, Field

from src.calsync.api.deps import get_current_user_id, get_sync_service, get_webhook_manager
from src.calsync.config import get_settings
from src.calsync.sync.exceptions import (
    ConfigDisabledError,
    ConfigNotFoundError,
    ConfigurationError,
    CredentialError,
    SyncError,
    SyncInProgressError,
    TransientProviderError,
    WebhookVerificationError,
)
from src.calsync.sync.schemas import (
    ProviderCredentials,
    ProviderType,
    SyncConfigCreate,
    SyncConfigRead,
    SyncConfigUpdate,
    SyncDirection,
    SyncOperationRead,
    SyncResult,
    WebhookSubscriptionRead,
)
from src.calsync.sync.service import SyncService
from src.calsync.sync.webhooks import WebhookManager

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


# ── Request/Response Schemas ─────────────────────────────────────────────────


class SyncConfigResponse(BaseModel):
    """Response model for a sync config. Credentials are never returned."""

    id: str
    user_id: str
    provider_type: str
    provider_id: str
    direction: str
    enabled: bool
    settings: dict[str, Any] = Field(default_factory=dict)
    last_sync_at: str | None = None
    next_sync_at: str | None = None
    webhook_id: str | None = None
    needs_reauth: bool = False
    last_error: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class SyncOperationResponse(BaseModel):
    """Response model for one audit record."""

    id: str
    sync_config_id: str
    operation: str
    status: str
    entity_type: str
    started_at: str
    completed_at: str | None = None
    error: str | None = None
    retry_count: int = 0
    pulled_count: int = 0
    pushed_count: int = 0
    deleted_count: int = 0


class SyncItemErrorResponse(BaseModel):
    entity_id: str | None = None
    external_id: str | None = None
    message: str
    kind: str


class SyncRunResponse(BaseModel):
    """Response model for a completed manual run."""

    config_id: str | None = None
    operation_id: str | None = None
    success: bool
    pulled: int = 0
    pushed: int = 0
    deleted: int = 0
    errors: list[SyncItemErrorResponse] = Field(default_factory=list)


class ValidateResponse(BaseModel):
    config_id: str
    valid: bool


class WebhookSubscriptionResponse(BaseModel):
    id: str
    sync_config_id: str
    channel_id: str
    resource_id: str
    expires_at: str


class WebhookStatusResponse(BaseModel):
    config_id: str
    active: bool
    subscription: WebhookSubscriptionResponse | None = None


class RenewalResponse(BaseModel):
    renewed: int = 0
    dropped: int = 0
    failed: int = 0


class CreateSyncConfigRequest(BaseModel):
    """Request body for connecting a provider calendar."""

    provider_type: ProviderType = ProviderType.GOOGLE_CALENDAR
    provider_id: str = Field(min_length=1)
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    enabled: bool = True
    settings: dict[str, Any] = Field(default_factory=dict)
    credentials: ProviderCredentials | None = None


class UpdateSyncConfigRequest(BaseModel):
    """Request body for updating a sync config. Omitted fields are unchanged."""

    enabled: bool | None = None
    direction: SyncDirection | None = None
    settings: dict[str, Any] | None = None
    credentials: ProviderCredentials | None = None


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _iso(value: Any) -> str | None:
    return value.isoformat() if value else None


def _config_to_response(config: SyncConfigRead) -> SyncConfigResponse:
    return SyncConfigResponse(
        id=config.id,
        user_id=config.user_id,
        provider_type=config.provider_type.value,
        provider_id=config.provider_id,
        direction=config.direction.value,
        enabled=config.enabled,
        settings=config.settings,
        last_sync_at=_iso(config.last_sync_at),
        next_sync_at=_iso(config.next_sync_at),
        webhook_id=config.webhook_id,
        needs_reauth=config.needs_reauth,
        last_error=config.last_error,
        created_at=_iso(config.created_at),
        updated_at=_iso(config.updated_at),
    )


def _operation_to_response(op: SyncOperationRead) -> SyncOperationResponse:
    return SyncOperationResponse(
        id=op.id,
        sync_config_id=op.sync_config_id,
        operation=op.operation.value,
        status=op.status.value,
        entity_type=op.entity_type,
        started_at=op.started_at.isoformat(),
        completed_at=_iso(op.completed_at),
        error=op.error,
        retry_count=op.retry_count,
        pulled_count=op.pulled_count,
        pushed_count=op.pushed_count,
        deleted_count=op.deleted_count,
    )


def _result_to_response(result: SyncResult) -> SyncRunResponse:
    return SyncRunResponse(
        config_id=result.config_id,
        operation_id=result.operation_id,
        success=result.success,
        pulled=result.pulled,
        pushed=result.pushed,
        deleted=result.deleted,
        errors=[SyncItemErrorResponse(**e.model_dump()) for e in result.errors],
    )


def _subscription_to_response(sub: WebhookSubscriptionRead) -> WebhookSubscriptionResponse:
    return WebhookSubscriptionResponse(
        id=sub.id,
        sync_config_id=sub.sync_config_id,
        channel_id=sub.channel_id,
        resource_id=sub.resource_id,
        expires_at=sub.expires_at.isoformat(),
    )


def _raise_http(exc: SyncError) -> NoReturn:
    """Translate a sync-core exception into the matching HTTP error."""
    if isinstance(exc, ConfigNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc
    if isinstance(exc, (ConfigDisabledError, SyncInProgressError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message) from exc
    if isinstance(exc, ConfigurationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    if isinstance(exc, CredentialError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "reauth_required", "message": exc.message},
        ) from exc
    if isinstance(exc, TransientProviderError):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message) from exc
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message) from exc


# ── Config Endpoints ─────────────────────────────────────────────────────────


@router.get("/configs", response_model=list[SyncConfigResponse])
async def list_configs(
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> list[SyncConfigResponse]:
    """List the caller's sync configs, newest first."""
    configs = await service.list_configs(user_id)
    return [_config_to_response(c) for c in configs]


@router.post("/configs", response_model=SyncConfigResponse, status_code=201)
async def create_config(
    body: CreateSyncConfigRequest,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> SyncConfigResponse:
    """Connect a provider calendar."""
    data = SyncConfigCreate(**body.model_dump(exclude={"credentials"}), credentials=body.credentials)
    try:
        config = await service.create_config(user_id, data)
    except SyncError as exc:
        _raise_http(exc)
    return _config_to_response(config)


@router.get("/configs/{config_id}", response_model=SyncConfigResponse)
async def get_config(
    config_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> SyncConfigResponse:
    try:
        config = await service.get_config(user_id, config_id)
    except SyncError as exc:
        _raise_http(exc)
    return _config_to_response(config)


@router.patch("/configs/{config_id}", response_model=SyncConfigResponse)
async def update_config(
    config_id: str,
    body: UpdateSyncConfigRequest,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> SyncConfigResponse:
    """Update enabled/direction/settings, or replace credentials after reconnecting."""
    data = SyncConfigUpdate(
        enabled=body.enabled,
        direction=body.direction,
        settings=body.settings,
        credentials=body.credentials,
    )
    try:
        config = await service.update_config(user_id, config_id, data)
    except SyncError as exc:
        _raise_http(exc)
    return _config_to_response(config)


@router.delete("/configs/{config_id}", status_code=204)
async def delete_config(
    config_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> Response:
    """Disconnect a calendar; removes its mappings, operations, and channels."""
    try:
        await service.delete_config(user_id, config_id)
    except SyncError as exc:
        _raise_http(exc)
    return Response(status_code=204)


@router.get("/configs/{config_id}/operations", response_model=list[SyncOperationResponse])
async def list_operations(
    config_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> list[SyncOperationResponse]:
    """The config's most recent audit records, newest first."""
    try:
        operations = await service.list_operations(user_id, config_id)
    except SyncError as exc:
        _raise_http(exc)
    return [_operation_to_response(op) for op in operations]


@router.post("/configs/{config_id}/run", response_model=SyncRunResponse)
async def run_sync(
    config_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> SyncRunResponse:
    """Run a sync now and wait for the result.

    Per-item failures are reported in the body with success=false; only
    run-level failures map to an error status.
    """
    try:
        await service.get_config(user_id, config_id)
        result = await service.run_sync(config_id)
    except SyncError as exc:
        _raise_http(exc)
    return _result_to_response(result)


@router.post("/configs/{config_id}/validate", response_model=ValidateResponse)
async def validate_config(
    config_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> ValidateResponse:
    """Check that the provider accepts the stored credentials."""
    try:
        valid = await service.validate_config(user_id, config_id)
    except SyncError as exc:
        _raise_http(exc)
    return ValidateResponse(config_id=config_id, valid=valid)


# ── Webhook Channel Endpoints ────────────────────────────────────────────────


@router.post("/configs/{config_id}/webhook", response_model=WebhookSubscriptionResponse, status_code=201)
async def register_webhook(
    config_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
    webhooks: WebhookManager = Depends(get_webhook_manager),
) -> WebhookSubscriptionResponse:
    """Register (or replace) the push-notification channel for a config."""
    try:
        await service.get_config(user_id, config_id)
        subscription = await webhooks.register(config_id)
    except SyncError as exc:
        _raise_http(exc)
    return _subscription_to_response(subscription)


@router.delete("/configs/{config_id}/webhook")
async def unregister_webhook(
    config_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
    webhooks: WebhookManager = Depends(get_webhook_manager),
) -> dict:
    try:
        await service.get_config(user_id, config_id)
        removed = await webhooks.unregister(config_id)
    except SyncError as exc:
        _raise_http(exc)
    return {"config_id": config_id, "removed": removed}


@router.get("/configs/{config_id}/webhook", response_model=WebhookStatusResponse)
async def webhook_status(
    config_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
    webhooks: WebhookManager = Depends(get_webhook_manager),
) -> WebhookStatusResponse:
    try:
        await service.get_config(user_id, config_id)
    except SyncError as exc:
        _raise_http(exc)
    report = await webhooks.check_status(config_id)
    return WebhookStatusResponse(
        config_id=report.config_id,
        active=report.active,
        subscription=(
            _subscription_to_response(report.subscription) if report.subscription else None
        ),
    )


@router.post("/renew-webhooks", response_model=RenewalResponse)
async def renew_webhooks(
    authorization: str | None = Header(default=None),
    webhooks: WebhookManager = Depends(get_webhook_manager),
) -> RenewalResponse:
    """Cron entry point for the renewal sweep.

    Requires ``Authorization: Bearer <CRON_SECRET>`` when CRON_SECRET is set.
    """
    secret = get_settings().CRON_SECRET
    if secret and authorization != f"Bearer {secret}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")
    report = await webhooks.renew_all()
    return RenewalResponse(renewed=report.renewed, dropped=report.dropped, failed=report.failed)


# ── Inbound Notifications ────────────────────────────────────────────────────


@router.post("/webhook/{provider_type}")
async def receive_webhook(
    provider_type: str,
    request: Request,
    service: SyncService = Depends(get_sync_service),
) -> dict:
    """Receive a provider push notification.

    Acknowledges quickly; triggered runs happen in the background. The
    provider retries on non-2xx, so unknown channels are acknowledged and
    ignored rather than rejected.
    """
    try:
        notification = service.registry.parse_notification(provider_type, request.headers)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc

    try:
        return await service.handle_webhook_notification(provider_type, notification)
    except WebhookVerificationError as exc:
        logger.warning("sync.webhook_rejected", provider_type=provider_type, error=exc.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
