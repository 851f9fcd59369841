"""Sync repository -- async CRUD for configs, mappings, operations, subscriptions, events.

Provides SyncRepository with the session_factory callable pattern. Handles
serialization between Pydantic schemas and SQLAlchemy models. Every write
commits immediately: the orchestrator persists cross-step state through the
store so a crash between steps leaves inspectable rows behind.

Timestamps that drive reconciliation (event updated_at, mapping
last_synced_at, operation started_at) are always passed in by the caller so
the orchestrator's clock is the single source of time.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.calsync.sync.models import (
    CalendarEventModel,
    SyncConfigModel,
    SyncMappingModel,
    SyncOperationModel,
    WebhookSubscriptionModel,
)
from src.calsync.sync.schemas import (
    CalendarEventCreate,
    CalendarEventRead,
    CalendarEventUpdate,
    OperationKind,
    OperationStatus,
    SyncConfigCreate,
    SyncConfigRead,
    SyncMappingRead,
    SyncOperationRead,
    WebhookSubscriptionRead,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _uuid(value: str) -> uuid.UUID | None:
    """Parse an id string; None for malformed input so lookups miss cleanly."""
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _model_to_config(model: SyncConfigModel) -> SyncConfigRead:
    """Convert SyncConfigModel to SyncConfigRead schema."""
    return SyncConfigRead(
        id=str(model.id),
        user_id=model.user_id,
        provider_type=model.provider_type,
        provider_id=model.provider_id,
        direction=model.direction,
        enabled=model.enabled,
        credentials=model.credentials or {},
        settings=model.settings or {},
        last_sync_at=model.last_sync_at,
        next_sync_at=model.next_sync_at,
        sync_token=model.sync_token,
        webhook_id=model.webhook_id,
        needs_reauth=bool(model.needs_reauth),
        last_error=model.last_error,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_mapping(model: SyncMappingModel) -> SyncMappingRead:
    """Convert SyncMappingModel to SyncMappingRead schema."""
    return SyncMappingRead(
        id=str(model.id),
        event_id=str(model.event_id),
        sync_config_id=str(model.sync_config_id),
        external_id=model.external_id,
        provider_id=model.provider_id,
        last_synced_at=model.last_synced_at,
        etag=model.etag,
    )


def _model_to_operation(model: SyncOperationModel) -> SyncOperationRead:
    """Convert SyncOperationModel to SyncOperationRead schema."""
    return SyncOperationRead(
        id=str(model.id),
        sync_config_id=str(model.sync_config_id),
        operation=model.operation,
        status=model.status,
        entity_type=model.entity_type,
        started_at=model.started_at,
        completed_at=model.completed_at,
        error=model.error,
        retry_count=model.retry_count or 0,
        pulled_count=model.pulled_count or 0,
        pushed_count=model.pushed_count or 0,
        deleted_count=model.deleted_count or 0,
    )


def _model_to_subscription(model: WebhookSubscriptionModel) -> WebhookSubscriptionRead:
    """Convert WebhookSubscriptionModel to WebhookSubscriptionRead schema."""
    return WebhookSubscriptionRead(
        id=str(model.id),
        sync_config_id=str(model.sync_config_id),
        provider_id=model.provider_id,
        resource_id=model.resource_id,
        channel_id=model.channel_id,
        expires_at=model.expires_at,
        created_at=model.created_at,
    )


def _model_to_event(model: CalendarEventModel) -> CalendarEventRead:
    """Convert CalendarEventModel to CalendarEventRead schema."""
    return CalendarEventRead(
        id=str(model.id),
        user_id=model.user_id,
        title=model.title,
        description=model.description,
        location=model.location,
        status=model.status,
        start_date=model.start_date,
        end_date=model.end_date,
        start_datetime=model.start_datetime,
        end_datetime=model.end_datetime,
        start_timezone=model.start_timezone,
        end_timezone=model.end_timezone,
        attendees=model.attendees or [],
        recurrence=model.recurrence or [],
        reminders=model.reminders,
        metadata=model.metadata_json or {},
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _event_columns(data: CalendarEventCreate | CalendarEventUpdate, partial: bool) -> dict[str, Any]:
    """Flatten an event payload into column values.

    For partial updates only explicitly-set fields are returned.
    """
    payload = data.model_dump(mode="json", exclude_unset=partial)
    columns: dict[str, Any] = {}
    for key, value in payload.items():
        if key == "metadata":
            columns["metadata_json"] = value or {}
        elif key in ("start_datetime", "end_datetime"):
            columns[key] = getattr(data, key)
        elif key in ("attendees", "recurrence"):
            columns[key] = value or []
        else:
            columns[key] = value
    return columns


# ── Repository ──────────────────────────────────────────────────────────────


class SyncRepository:
    """Async CRUD operations for all sync entities and the internal event store.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Configs ─────────────────────────────────────────────────────────────

    async def create_config(
        self, user_id: str, data: SyncConfigCreate
    ) -> SyncConfigRead:
        """Create a new sync config.

        Args:
            user_id: Owning user id.
            data: SyncConfigCreate schema with provider details.

        Returns:
            SyncConfigRead with all persisted fields.
        """
        async for session in self._session_factory():
            model = SyncConfigModel(
                user_id=user_id,
                provider_type=data.provider_type.value,
                provider_id=data.provider_id,
                direction=data.direction.value,
                enabled=data.enabled,
                credentials=(
                    data.credentials.model_dump(mode="json") if data.credentials else {}
                ),
                settings=data.settings,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_config(model)

    async def get_config(self, config_id: str) -> SyncConfigRead | None:
        """Get a config by id regardless of owner."""
        key = _uuid(config_id)
        if key is None:
            return None
        async for session in self._session_factory():
            model = await session.get(SyncConfigModel, key)
            return _model_to_config(model) if model else None

    async def get_user_config(
        self, user_id: str, config_id: str
    ) -> SyncConfigRead | None:
        """Get a config by id, scoped to its owner."""
        config = await self.get_config(config_id)
        if config is None or config.user_id != user_id:
            return None
        return config

    async def list_configs(self, user_id: str) -> list[SyncConfigRead]:
        """List a user's configs, newest first."""
        async for session in self._session_factory():
            stmt = (
                select(SyncConfigModel)
                .where(SyncConfigModel.user_id == user_id)
                .order_by(SyncConfigModel.created_at.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_config(m) for m in result.scalars().all()]

    async def list_enabled_configs(
        self, provider_type: str | None = None
    ) -> list[SyncConfigRead]:
        """List enabled configs, optionally filtered by provider type."""
        async for session in self._session_factory():
            stmt = select(SyncConfigModel).where(SyncConfigModel.enabled.is_(True))
            if provider_type is not None:
                stmt = stmt.where(SyncConfigModel.provider_type == provider_type)
            result = await session.execute(stmt)
            return [_model_to_config(m) for m in result.scalars().all()]

    async def list_due_configs(self, now: datetime) -> list[SyncConfigRead]:
        """Enabled configs whose next_sync_at is unset or not in the future."""
        async for session in self._session_factory():
            stmt = select(SyncConfigModel).where(
                SyncConfigModel.enabled.is_(True),
                (SyncConfigModel.next_sync_at.is_(None))
                | (SyncConfigModel.next_sync_at <= now),
            )
            result = await session.execute(stmt)
            return [_model_to_config(m) for m in result.scalars().all()]

    async def update_config(
        self, config_id: str, **fields: Any
    ) -> SyncConfigRead | None:
        """Update arbitrary config columns.

        Args:
            config_id: Config UUID string.
            **fields: Column name to new value.

        Returns:
            Updated SyncConfigRead, or None if the config does not exist.
        """
        key = _uuid(config_id)
        if key is None:
            return None
        async for session in self._session_factory():
            model = await session.get(SyncConfigModel, key)
            if model is None:
                return None
            for name, value in fields.items():
                setattr(model, name, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_config(model)

    async def delete_config(self, config_id: str) -> bool:
        """Delete a config and all its dependent rows.

        The foreign keys cascade in the database; the explicit deletes keep
        the behavior identical on backends without FK enforcement.
        """
        key = _uuid(config_id)
        if key is None:
            return False
        async for session in self._session_factory():
            for child in (SyncMappingModel, SyncOperationModel, WebhookSubscriptionModel):
                await session.execute(
                    delete(child).where(child.sync_config_id == key)
                )
            result = await session.execute(
                delete(SyncConfigModel).where(SyncConfigModel.id == key)
            )
            await session.commit()
            deleted = result.rowcount > 0
            if deleted:
                logger.info("sync.config_deleted", config_id=config_id)
            return deleted

    # ── Mappings ────────────────────────────────────────────────────────────

    async def get_mapping_by_external(
        self, config_id: str, external_id: str
    ) -> SyncMappingRead | None:
        async for session in self._session_factory():
            stmt = select(SyncMappingModel).where(
                SyncMappingModel.sync_config_id == uuid.UUID(config_id),
                SyncMappingModel.external_id == external_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_mapping(model) if model else None

    async def get_mapping_by_event(
        self, config_id: str, event_id: str
    ) -> SyncMappingRead | None:
        async for session in self._session_factory():
            stmt = select(SyncMappingModel).where(
                SyncMappingModel.sync_config_id == uuid.UUID(config_id),
                SyncMappingModel.event_id == uuid.UUID(event_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_mapping(model) if model else None

    async def list_mappings_for_config(self, config_id: str) -> list[SyncMappingRead]:
        async for session in self._session_factory():
            stmt = select(SyncMappingModel).where(
                SyncMappingModel.sync_config_id == uuid.UUID(config_id)
            )
            result = await session.execute(stmt)
            return [_model_to_mapping(m) for m in result.scalars().all()]

    async def list_mappings_for_events(
        self, event_ids: list[str]
    ) -> list[SyncMappingRead]:
        """All mappings (under any config) for the given internal events."""
        keys = [k for k in (_uuid(e) for e in event_ids) if k is not None]
        if not keys:
            return []
        async for session in self._session_factory():
            stmt = select(SyncMappingModel).where(SyncMappingModel.event_id.in_(keys))
            result = await session.execute(stmt)
            return [_model_to_mapping(m) for m in result.scalars().all()]

    async def create_mapping(
        self,
        config_id: str,
        event_id: str,
        external_id: str,
        provider_id: str,
        etag: str | None,
        synced_at: datetime,
    ) -> SyncMappingRead:
        """Insert a mapping row linking an internal event to an external one."""
        async for session in self._session_factory():
            model = SyncMappingModel(
                sync_config_id=uuid.UUID(config_id),
                event_id=uuid.UUID(event_id),
                external_id=external_id,
                provider_id=provider_id,
                etag=etag,
                last_synced_at=synced_at,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_mapping(model)

    async def touch_mapping(
        self, mapping_id: str, etag: str | None, synced_at: datetime
    ) -> None:
        """Refresh a mapping's change tag and last-synced timestamp."""
        async for session in self._session_factory():
            await session.execute(
                update(SyncMappingModel)
                .where(SyncMappingModel.id == uuid.UUID(mapping_id))
                .values(etag=etag, last_synced_at=synced_at)
            )
            await session.commit()

    async def delete_mapping(self, mapping_id: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                delete(SyncMappingModel).where(
                    SyncMappingModel.id == uuid.UUID(mapping_id)
                )
            )
            await session.commit()

    # ── Operations ──────────────────────────────────────────────────────────

    async def create_operation(
        self,
        config_id: str,
        operation: OperationKind,
        started_at: datetime,
        retry_count: int = 0,
    ) -> SyncOperationRead:
        """Open a pending audit record for one run."""
        async for session in self._session_factory():
            model = SyncOperationModel(
                sync_config_id=uuid.UUID(config_id),
                operation=operation.value,
                status=OperationStatus.PENDING.value,
                entity_type="event",
                started_at=started_at,
                retry_count=retry_count,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_operation(model)

    async def finalize_operation(
        self,
        operation_id: str,
        status: OperationStatus,
        completed_at: datetime,
        error: str | None = None,
        pulled: int = 0,
        pushed: int = 0,
        deleted: int = 0,
    ) -> SyncOperationRead | None:
        """Finalize a pending operation.

        Only rows still pending are updated, so an operation is finalized
        exactly once even if the reaper and the run race.
        """
        async for session in self._session_factory():
            model = await session.get(SyncOperationModel, uuid.UUID(operation_id))
            if model is None:
                return None
            if model.status == OperationStatus.PENDING.value:
                model.status = status.value
                model.completed_at = completed_at
                model.error = error
                model.pulled_count = pulled
                model.pushed_count = pushed
                model.deleted_count = deleted
                await session.commit()
                await session.refresh(model)
            return _model_to_operation(model)

    async def get_latest_operation(self, config_id: str) -> SyncOperationRead | None:
        operations = await self.list_operations(config_id, limit=1)
        return operations[0] if operations else None

    async def list_operations(
        self, config_id: str, limit: int = 20
    ) -> list[SyncOperationRead]:
        """Most recent operations for a config, newest first."""
        async for session in self._session_factory():
            stmt = (
                select(SyncOperationModel)
                .where(SyncOperationModel.sync_config_id == uuid.UUID(config_id))
                .order_by(SyncOperationModel.started_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_operation(m) for m in result.scalars().all()]

    async def list_stale_operations(self, started_before: datetime) -> list[SyncOperationRead]:
        """Pending operations started before the cutoff."""
        async for session in self._session_factory():
            stmt = select(SyncOperationModel).where(
                SyncOperationModel.status == OperationStatus.PENDING.value,
                SyncOperationModel.started_at < started_before,
            )
            result = await session.execute(stmt)
            return [_model_to_operation(m) for m in result.scalars().all()]

    # ── Webhook Subscriptions ───────────────────────────────────────────────

    async def create_subscription(
        self,
        config_id: str,
        provider_id: str,
        resource_id: str,
        channel_id: str,
        expires_at: datetime,
    ) -> WebhookSubscriptionRead:
        async for session in self._session_factory():
            model = WebhookSubscriptionModel(
                sync_config_id=uuid.UUID(config_id),
                provider_id=provider_id,
                resource_id=resource_id,
                channel_id=channel_id,
                expires_at=expires_at,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_subscription(model)

    async def list_subscriptions(self, config_id: str) -> list[WebhookSubscriptionRead]:
        """Subscriptions for a config, latest expiry first."""
        async for session in self._session_factory():
            stmt = (
                select(WebhookSubscriptionModel)
                .where(WebhookSubscriptionModel.sync_config_id == uuid.UUID(config_id))
                .order_by(WebhookSubscriptionModel.expires_at.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_subscription(m) for m in result.scalars().all()]

    async def list_expiring_subscriptions(
        self, expires_before: datetime
    ) -> list[WebhookSubscriptionRead]:
        async for session in self._session_factory():
            stmt = select(WebhookSubscriptionModel).where(
                WebhookSubscriptionModel.expires_at < expires_before
            )
            result = await session.execute(stmt)
            return [_model_to_subscription(m) for m in result.scalars().all()]

    async def delete_subscription(self, subscription_id: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                delete(WebhookSubscriptionModel).where(
                    WebhookSubscriptionModel.id == uuid.UUID(subscription_id)
                )
            )
            await session.commit()

    # ── Internal Events ─────────────────────────────────────────────────────

    async def create_event(
        self, user_id: str, data: CalendarEventCreate, now: datetime
    ) -> CalendarEventRead:
        """Insert an internal event with created_at = updated_at = now."""
        async for session in self._session_factory():
            model = CalendarEventModel(
                user_id=user_id,
                created_at=now,
                updated_at=now,
                **_event_columns(data, partial=False),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_event(model)

    async def get_event(self, event_id: str) -> CalendarEventRead | None:
        key = _uuid(event_id)
        if key is None:
            return None
        async for session in self._session_factory():
            model = await session.get(CalendarEventModel, key)
            return _model_to_event(model) if model else None

    async def update_event(
        self,
        event_id: str,
        data: CalendarEventCreate | CalendarEventUpdate,
        updated_at: datetime,
    ) -> CalendarEventRead | None:
        """Apply a full (create-shaped) or partial update to an event.

        Args:
            event_id: Event UUID string.
            data: Full replacement or partial update payload.
            updated_at: Timestamp written to updated_at.

        Returns:
            Updated CalendarEventRead, or None if the event does not exist.
        """
        key = _uuid(event_id)
        if key is None:
            return None
        partial = isinstance(data, CalendarEventUpdate)
        async for session in self._session_factory():
            model = await session.get(CalendarEventModel, key)
            if model is None:
                return None
            for name, value in _event_columns(data, partial=partial).items():
                setattr(model, name, value)
            model.updated_at = updated_at
            await session.commit()
            await session.refresh(model)
            return _model_to_event(model)

    async def delete_event(self, event_id: str) -> bool:
        key = _uuid(event_id)
        if key is None:
            return False
        async for session in self._session_factory():
            result = await session.execute(
                delete(CalendarEventModel).where(CalendarEventModel.id == key)
            )
            await session.commit()
            return result.rowcount > 0

    async def list_events_by_ids(
        self, user_id: str, event_ids: list[str]
    ) -> list[CalendarEventRead]:
        keys = [k for k in (_uuid(e) for e in event_ids) if k is not None]
        if not keys:
            return []
        async for session in self._session_factory():
            stmt = select(CalendarEventModel).where(
                CalendarEventModel.user_id == user_id,
                CalendarEventModel.id.in_(keys),
            )
            result = await session.execute(stmt)
            return [_model_to_event(m) for m in result.scalars().all()]

    async def list_events_created_since(
        self, user_id: str, since: datetime
    ) -> list[CalendarEventRead]:
        """A user's events created at or after ``since``, newest first."""
        async for session in self._session_factory():
            stmt = (
                select(CalendarEventModel)
                .where(
                    CalendarEventModel.user_id == user_id,
                    CalendarEventModel.created_at >= since,
                )
                .order_by(CalendarEventModel.created_at.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_event(m) for m in result.scalars().all()]

    async def list_unmapped_events(
        self, user_id: str, config_id: str
    ) -> list[CalendarEventRead]:
        """A user's events with no mapping under the given config."""
        async for session in self._session_factory():
            mapped = select(SyncMappingModel.event_id).where(
                SyncMappingModel.sync_config_id == uuid.UUID(config_id)
            )
            stmt = (
                select(CalendarEventModel)
                .where(
                    CalendarEventModel.user_id == user_id,
                    CalendarEventModel.id.not_in(mapped),
                )
                .order_by(CalendarEventModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_event(m) for m in result.scalars().all()]

    async def list_mapped_events(
        self, user_id: str, config_id: str
    ) -> list[tuple[CalendarEventRead, SyncMappingRead]]:
        """A user's events joined with their mapping under the given config."""
        async for session in self._session_factory():
            stmt = (
                select(CalendarEventModel, SyncMappingModel)
                .join(
                    SyncMappingModel,
                    SyncMappingModel.event_id == CalendarEventModel.id,
                )
                .where(
                    CalendarEventModel.user_id == user_id,
                    SyncMappingModel.sync_config_id == uuid.UUID(config_id),
                )
            )
            result = await session.execute(stmt)
            return [
                (_model_to_event(event), _model_to_mapping(mapping))
                for event, mapping in result.all()
            ]
