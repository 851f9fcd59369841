"""Provider lookup table keyed by ProviderType.

Built once at startup and handed to the orchestrator and the webhook
manager. Each entry is a zero-argument factory returning a fresh,
uninitialized adapter.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping

import structlog

from src.calsync.config import Settings
from src.calsync.sync.credentials import CredentialProvider
from src.calsync.sync.exceptions import ConfigurationError
from src.calsync.sync.providers.base import CalendarProvider
from src.calsync.sync.schemas import ProviderType, SyncConfigRead, WebhookNotification

logger = structlog.get_logger(__name__)

ProviderFactory = Callable[[], CalendarProvider]


class ProviderRegistry:
    """Maps provider types to adapter factories."""

    def __init__(self) -> None:
        self._factories: dict[ProviderType, ProviderFactory] = {}

    def register(self, provider_type: ProviderType, factory: ProviderFactory) -> None:
        self._factories[provider_type] = factory
        logger.debug("provider.registered", provider_type=provider_type.value)

    def is_registered(self, provider_type: ProviderType | str) -> bool:
        try:
            return ProviderType(provider_type) in self._factories
        except ValueError:
            return False

    def create(self, provider_type: ProviderType | str) -> CalendarProvider:
        """Instantiate an adapter for the given type.

        Raises:
            ConfigurationError: If the type is unknown or unregistered.
        """
        try:
            key = ProviderType(provider_type)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown provider type: {provider_type}") from exc
        factory = self._factories.get(key)
        if factory is None:
            raise ConfigurationError(f"Unknown provider type: {key.value}")
        return factory()

    def provider_types(self) -> list[ProviderType]:
        return list(self._factories)

    def parse_notification(
        self, provider_type: ProviderType | str, headers: Mapping[str, str]
    ) -> WebhookNotification:
        """Normalize inbound notification headers with the type's adapter.

        Raises:
            ConfigurationError: If the type is unknown or unregistered.
        """
        return self.create(provider_type).parse_notification(headers)

    async def open(
        self, config: SyncConfigRead, credential_provider: CredentialProvider
    ) -> CalendarProvider:
        """Create an adapter for a config and initialize it with current credentials.

        Raises:
            ConfigurationError: Unknown provider type or unsupported direction.
            CredentialError: Credentials missing, expired, or rejected.
        """
        provider = self.create(config.provider_type)
        if config.direction not in provider.supported_directions:
            raise ConfigurationError(
                f"Provider {config.provider_type.value} does not support "
                f"direction {config.direction.value}",
                config_id=config.id,
            )
        credentials = await credential_provider.get_credentials(config)
        await provider.initialize(config, credentials)
        return provider


def build_default_registry(settings: Settings) -> ProviderRegistry:
    """Registry with every built-in adapter."""
    from src.calsync.sync.providers.google_calendar import GoogleCalendarProvider

    registry = ProviderRegistry()
    registry.register(
        ProviderType.GOOGLE_CALENDAR,
        lambda: GoogleCalendarProvider(
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
        ),
    )
    return registry
