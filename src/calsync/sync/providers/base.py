"""Calendar provider abstract base class -- the capability contract every adapter implements.

The orchestrator only talks to providers through this interface; a new
external calendar is added by implementing it and registering the class in
the ProviderRegistry, never by changing the orchestrator.

Webhook methods are optional. Adapters that support push notifications set
``supports_webhooks = True`` and override them; the defaults raise
ConfigurationError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping

from src.calsync.sync.exceptions import ConfigurationError
from src.calsync.sync.schemas import (
    ExternalEvent,
    ProviderCredentials,
    ProviderType,
    PullResult,
    PushResult,
    SyncConfigRead,
    SyncDirection,
    WebhookChange,
    WebhookNotification,
    WebhookSubscriptionRead,
)


class CalendarProvider(ABC):
    """Abstract interface for external calendar operations.

    Methods:
        initialize: Bind the adapter to a config and its current credentials.
        validate_connection: Cheap authenticated call; True if reachable.
        pull_events: Full (no cursor) or incremental (cursor) fetch.
        push_event: Create an event remotely, return its id and change tag.
        update_event: Replace a remote event, return the new change tag.
        delete_event: Delete a remote event.
        setup_webhook / renew_webhook / cancel_webhook: Channel lifecycle.
        process_webhook_payload: Turn a notification into concrete changes.
    """

    provider_type: ProviderType
    display_name: str = ""
    supports_webhooks: bool = False
    supported_directions: tuple[SyncDirection, ...] = (
        SyncDirection.PULL,
        SyncDirection.PUSH,
        SyncDirection.BIDIRECTIONAL,
    )

    @abstractmethod
    async def initialize(
        self, config: SyncConfigRead, credentials: ProviderCredentials
    ) -> None:
        """Bind to a config. Raises CredentialError or ConfigurationError."""
        ...

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Return True if the provider accepts the current credentials."""
        ...

    @abstractmethod
    async def pull_events(self, cursor: str | None = None) -> PullResult:
        """Fetch changed events.

        Without a cursor, performs a bounded full sync. With a cursor,
        performs an incremental fetch and falls back to one full sync if the
        provider rejects the cursor. Cancelled events surface as
        ``ExternalEvent(deleted=True)`` markers.
        """
        ...

    @abstractmethod
    async def push_event(self, event: ExternalEvent) -> PushResult:
        """Create an event remotely."""
        ...

    @abstractmethod
    async def update_event(self, external_id: str, event: ExternalEvent) -> str | None:
        """Replace a remote event, returning its new change tag."""
        ...

    @abstractmethod
    async def delete_event(self, external_id: str) -> None:
        """Delete a remote event. Already-deleted events are not an error."""
        ...

    # ── Optional push-notification capability ──────────────────────────────

    async def setup_webhook(self, callback_url: str) -> WebhookSubscriptionRead:
        raise ConfigurationError(
            f"Provider {self.provider_type.value} does not support webhooks"
        )

    async def renew_webhook(
        self, subscription: WebhookSubscriptionRead, callback_url: str
    ) -> WebhookSubscriptionRead:
        raise ConfigurationError(
            f"Provider {self.provider_type.value} does not support webhooks"
        )

    async def cancel_webhook(self, subscription: WebhookSubscriptionRead) -> None:
        raise ConfigurationError(
            f"Provider {self.provider_type.value} does not support webhooks"
        )

    async def process_webhook_payload(
        self, payload: WebhookNotification, cursor: str | None = None
    ) -> list[WebhookChange]:
        raise ConfigurationError(
            f"Provider {self.provider_type.value} does not support webhooks"
        )

    @staticmethod
    def parse_notification(headers: Mapping[str, str]) -> WebhookNotification:
        """Normalize inbound notification headers. Overridden per provider."""
        return WebhookNotification()
