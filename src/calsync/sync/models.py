"""Sync persistence models -- configs, mappings, operations, subscriptions, events.

Five SQLAlchemy models on the shared declarative Base:
- SyncConfigModel: One user-to-provider connection with cursor and schedule
- SyncMappingModel: Internal event <-> external event identity link
- SyncOperationModel: Audit record of one orchestrator invocation
- WebhookSubscriptionModel: Active push-notification channel
- CalendarEventModel: The internal event store

Child tables reference sync_configs with ON DELETE CASCADE so removing a
config removes its mappings, operations, and subscriptions.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.calsync.core.database import Base


class SyncConfigModel(Base):
    """A configured sync connection from a user to one provider calendar."""

    __tablename__ = "sync_configs"
    __table_args__ = (
        Index("ix_sync_configs_user_id", "user_id"),
        Index("ix_sync_configs_due", "enabled", "next_sync_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[str] = mapped_column(String(200), nullable=False)
    provider_type: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(200), nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true")
    )
    credentials: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    settings: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sync_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    needs_reauth: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class SyncMappingModel(Base):
    """Links an internal event to its counterpart under one config.

    Both (config, external_id) and (config, event_id) are unique: each is a
    dedup key for reconciliation.
    """

    __tablename__ = "sync_mappings"
    __table_args__ = (
        UniqueConstraint(
            "sync_config_id",
            "external_id",
            name="uq_sync_mapping_config_external",
        ),
        UniqueConstraint(
            "sync_config_id",
            "event_id",
            name="uq_sync_mapping_config_event",
        ),
        Index("ix_sync_mappings_event_id", "event_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    event_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    sync_config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("sync_configs.id", ondelete="CASCADE"),
        nullable=False,
    )
    external_id: Mapped[str] = mapped_column(String(1024), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(200), nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    etag: Mapped[str | None] = mapped_column(String(200), nullable=True)


class SyncOperationModel(Base):
    """Audit record of one orchestrator run."""

    __tablename__ = "sync_operations"
    __table_args__ = (
        Index("ix_sync_operations_config_started", "sync_config_id", "started_at"),
        Index("ix_sync_operations_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    sync_config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("sync_configs.id", ondelete="CASCADE"),
        nullable=False,
    )
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'")
    )
    entity_type: Mapped[str] = mapped_column(
        String(50), default="event", server_default=text("'event'")
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    retry_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    pulled_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    pushed_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    deleted_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )


class WebhookSubscriptionModel(Base):
    """Push-notification channel registered with a provider."""

    __tablename__ = "webhook_subscriptions"
    __table_args__ = (
        Index("ix_webhook_subscriptions_expires_at", "expires_at"),
        Index("ix_webhook_subscriptions_config", "sync_config_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    sync_config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("sync_configs.id", ondelete="CASCADE"),
        nullable=False,
    )
    provider_id: Mapped[str] = mapped_column(String(200), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(500), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(200), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class CalendarEventModel(Base):
    """Internal calendar event owned by a user.

    All-day events use start_date/end_date ("yyyy-mm-dd"); timed events use
    start_datetime/end_datetime plus IANA zone names.
    """

    __tablename__ = "calendar_events"
    __table_args__ = (
        Index("ix_calendar_events_user_created", "user_id", "created_at"),
        Index("ix_calendar_events_user_updated", "user_id", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[str] = mapped_column(String(200), nullable=False)
    title: Mapped[str] = mapped_column(String(1024), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default="confirmed", server_default=text("'confirmed'")
    )
    start_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    end_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    start_datetime: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    end_datetime: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    start_timezone: Mapped[str | None] = mapped_column(String(100), nullable=True)
    end_timezone: Mapped[str | None] = mapped_column(String(100), nullable=True)
    attendees: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    recurrence: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    reminders: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    metadata_json: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
