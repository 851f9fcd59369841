"""Pydantic schemas for calendar synchronization.

Defines all structured types crossing the service, provider, and HTTP seams:
- Enums: SyncDirection, ProviderType, OperationKind, OperationStatus,
  ChangeKind, ResourceState, EventStatus
- Internal events: Attendee, ReminderOverride, Reminders,
  CalendarEventCreate/Update/Read
- Provider boundary: ExternalEvent, PullResult, PushResult, ProviderCredentials
- Persistence reads: SyncConfigRead, SyncMappingRead, SyncOperationRead,
  WebhookSubscriptionRead
- Requests: SyncConfigCreate, SyncConfigUpdate
- Results: SyncItemError, SyncResult, WebhookNotification, WebhookChange,
  WebhookStatus, RenewalReport
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncDirection(str, Enum):
    """Which phases a run executes for a config."""

    PULL = "pull"
    PUSH = "push"
    BIDIRECTIONAL = "bidirectional"

    @property
    def pulls(self) -> bool:
        return self in (SyncDirection.PULL, SyncDirection.BIDIRECTIONAL)

    @property
    def pushes(self) -> bool:
        return self in (SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL)


class ProviderType(str, Enum):
    """Adapter implementation selector."""

    GOOGLE_CALENDAR = "google-calendar"


class OperationKind(str, Enum):
    PULL = "pull"
    PUSH = "push"
    DELETE = "delete"


class OperationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ResourceState(str, Enum):
    """Push-notification state marker sent by the provider."""

    SYNC = "sync"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class EventStatus(str, Enum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


# ── Event Components ────────────────────────────────────────────────────────


class Attendee(BaseModel):
    email: str
    display_name: str | None = None
    response_status: str | None = None


class ReminderOverride(BaseModel):
    method: str
    minutes: int


class Reminders(BaseModel):
    use_default: bool = False
    overrides: list[ReminderOverride] = Field(default_factory=list)


# ── Internal Events ─────────────────────────────────────────────────────────


class CalendarEventBase(BaseModel):
    """Fields shared by internal event create and read payloads.

    An event is either all-day (start_date/end_date) or timed
    (start_datetime/end_datetime with optional IANA time zones).
    """

    title: str
    description: str | None = None
    location: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    start_datetime: datetime | None = None
    end_datetime: datetime | None = None
    start_timezone: str | None = None
    end_timezone: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    recurrence: list[str] = Field(default_factory=list)
    reminders: Reminders | None = None
    status: EventStatus = EventStatus.CONFIRMED
    metadata: dict[str, Any] = Field(default_factory=dict)


class CalendarEventCreate(CalendarEventBase):
    """Schema for creating an internal event (local CRUD or pull-side create)."""


class CalendarEventUpdate(BaseModel):
    """Partial update: only fields explicitly set are applied."""

    title: str | None = None
    description: str | None = None
    location: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    start_datetime: datetime | None = None
    end_datetime: datetime | None = None
    start_timezone: str | None = None
    end_timezone: str | None = None
    attendees: list[Attendee] | None = None
    recurrence: list[str] | None = None
    reminders: Reminders | None = None
    status: EventStatus | None = None
    metadata: dict[str, Any] | None = None


class CalendarEventRead(CalendarEventBase):
    id: str
    user_id: str
    created_at: datetime
    updated_at: datetime


# ── Provider Boundary ───────────────────────────────────────────────────────


class ExternalEvent(BaseModel):
    """Provider-neutral representation of a calendar event.

    ``deleted`` marks a provider-side cancellation; such events carry only
    their external_id reliably and are never turned into inserts.
    """

    external_id: str = ""
    summary: str = "Untitled Event"
    description: str | None = None
    location: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    start_datetime: datetime | None = None
    end_datetime: datetime | None = None
    start_timezone: str | None = None
    end_timezone: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    recurrence: list[str] = Field(default_factory=list)
    reminders: Reminders | None = None
    etag: str | None = None
    updated_at: datetime | None = None
    deleted: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class PullResult(BaseModel):
    events: list[ExternalEvent] = Field(default_factory=list)
    next_cursor: str | None = None
    full_sync: bool = False


class PushResult(BaseModel):
    external_id: str
    etag: str | None = None


class ProviderCredentials(BaseModel):
    """Current OAuth token pair handed to an adapter at initialization."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    @field_validator("expires_at", mode="before")
    @classmethod
    def _parse_epoch_millis(cls, value: Any) -> Any:
        """Accept epoch milliseconds as stored by OAuth token endpoints."""
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        return value

    def is_expired(self, now: datetime) -> bool:
        """True when the access token is past expiry and cannot be refreshed."""
        if self.expires_at is None or self.refresh_token:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now


# ── Persistence Reads ───────────────────────────────────────────────────────


class SyncConfigRead(BaseModel):
    """A user's connection to one provider calendar.

    The credential blob never leaves the process: it is excluded from
    serialization so API responses cannot leak tokens.
    """

    id: str
    user_id: str
    provider_type: ProviderType
    provider_id: str
    direction: SyncDirection
    enabled: bool = True
    credentials: dict[str, Any] = Field(default_factory=dict, exclude=True)
    settings: dict[str, Any] = Field(default_factory=dict)
    last_sync_at: datetime | None = None
    next_sync_at: datetime | None = None
    sync_token: str | None = Field(default=None, exclude=True)
    webhook_id: str | None = None
    needs_reauth: bool = False
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def calendar_id(self) -> str:
        return self.settings.get("calendar_id") or "primary"

    def sync_interval_minutes(self, default: int) -> int:
        value = self.settings.get("sync_interval_minutes")
        return int(value) if value else default


class SyncMappingRead(BaseModel):
    id: str
    event_id: str
    sync_config_id: str
    external_id: str
    provider_id: str
    last_synced_at: datetime
    etag: str | None = None


class SyncOperationRead(BaseModel):
    id: str
    sync_config_id: str
    operation: OperationKind
    status: OperationStatus
    entity_type: str = "event"
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None
    retry_count: int = 0
    pulled_count: int = 0
    pushed_count: int = 0
    deleted_count: int = 0


class WebhookSubscriptionRead(BaseModel):
    id: str
    sync_config_id: str
    provider_id: str
    resource_id: str
    channel_id: str
    expires_at: datetime
    created_at: datetime | None = None


# ── Requests ────────────────────────────────────────────────────────────────


class SyncConfigCreate(BaseModel):
    provider_type: ProviderType = ProviderType.GOOGLE_CALENDAR
    provider_id: str
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    enabled: bool = True
    settings: dict[str, Any] = Field(default_factory=dict)
    credentials: ProviderCredentials | None = None


class SyncConfigUpdate(BaseModel):
    enabled: bool | None = None
    direction: SyncDirection | None = None
    settings: dict[str, Any] | None = None
    credentials: ProviderCredentials | None = None


# ── Results ─────────────────────────────────────────────────────────────────


class SyncItemError(BaseModel):
    """One failed item (or phase) inside a run; never aborts the batch."""

    entity_id: str | None = None
    external_id: str | None = None
    message: str
    kind: str = "item"


class SyncResult(BaseModel):
    config_id: str | None = None
    operation_id: str | None = None
    success: bool = True
    pulled: int = 0
    pushed: int = 0
    deleted: int = 0
    errors: list[SyncItemError] = Field(default_factory=list)


class WebhookNotification(BaseModel):
    """Headers of an inbound push notification, normalized."""

    channel_id: str | None = None
    resource_id: str | None = None
    resource_state: ResourceState | str | None = None
    channel_token: str | None = None
    message_number: int | None = None


class WebhookChange(BaseModel):
    external_id: str
    change: ChangeKind


class WebhookStatus(BaseModel):
    config_id: str
    active: bool
    subscription: WebhookSubscriptionRead | None = None


class RenewalReport(BaseModel):
    renewed: int = 0
    dropped: int = 0
    failed: int = 0
