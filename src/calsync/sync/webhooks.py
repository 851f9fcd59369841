"""Webhook lifecycle manager -- register, cancel, inspect, and renew push channels.

Renewal ordering: the replacement subscription row is inserted before the
old row is deleted, so a config always has at least one stored channel
while a renewal is in flight.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog

from src.calsync.config import Settings, get_settings
from src.calsync.core.monitoring import record_webhook_renewal
from src.calsync.sync.credentials import CredentialProvider, StoredCredentialProvider
from src.calsync.sync.exceptions import (
    ConfigDisabledError,
    ConfigNotFoundError,
    ConfigurationError,
    CredentialError,
)
from src.calsync.sync.providers.registry import ProviderRegistry
from src.calsync.sync.repository import SyncRepository
from src.calsync.sync.schemas import (
    RenewalReport,
    SyncConfigRead,
    WebhookStatus,
    WebhookSubscriptionRead,
)

logger = structlog.get_logger(__name__)


class WebhookManager:
    """Owns WebhookSubscription rows and the matching provider channels.

    Args:
        repository: SyncRepository for subscription and config rows.
        registry: ProviderRegistry used to open adapters.
        credential_provider: Supplies current tokens.
        settings: Supplies the callback URL and renewal horizon.
        clock: Callable returning the current UTC time.
    """

    def __init__(
        self,
        repository: SyncRepository,
        registry: ProviderRegistry,
        credential_provider: CredentialProvider | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repository
        self._registry = registry
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._credentials = credential_provider or StoredCredentialProvider(self._clock)

    def _callback_url(self, config: SyncConfigRead) -> str:
        url = self._settings.webhook_callback_url(config.provider_type.value)
        if url is None:
            raise ConfigurationError(
                "PUBLIC_BASE_URL is not configured; cannot register push notifications",
                config_id=config.id,
            )
        return url

    async def register(self, config_id: str) -> WebhookSubscriptionRead:
        """Replace any existing channel for the config with a new one.

        Raises:
            ConfigurationError: Config missing or disabled, provider without
                webhook support, or no public callback URL.
            CredentialError: Tokens missing or rejected.
        """
        config = await self._repo.get_config(config_id)
        if config is None:
            raise ConfigNotFoundError(f"Sync config not found: {config_id}", config_id=config_id)
        if not config.enabled:
            raise ConfigDisabledError(f"Sync config is disabled: {config_id}", config_id=config_id)

        callback_url = self._callback_url(config)
        provider = await self._registry.open(config, self._credentials)
        if not provider.supports_webhooks:
            raise ConfigurationError(
                f"Provider {config.provider_type.value} does not support webhooks",
                config_id=config_id,
            )

        for existing in await self._repo.list_subscriptions(config_id):
            try:
                await provider.cancel_webhook(existing)
            except Exception as exc:
                logger.warning(
                    "webhook.cancel_existing_failed",
                    config_id=config_id,
                    channel_id=existing.channel_id,
                    error=str(exc),
                )
            await self._repo.delete_subscription(existing.id)

        channel = await provider.setup_webhook(callback_url)
        stored = await self._repo.create_subscription(
            config_id,
            channel.provider_id,
            channel.resource_id,
            channel.channel_id,
            channel.expires_at,
        )
        await self._repo.update_config(config_id, webhook_id=stored.channel_id)

        logger.info(
            "webhook.registered",
            config_id=config_id,
            channel_id=stored.channel_id,
            expires_at=stored.expires_at.isoformat(),
        )
        return stored

    async def unregister(self, config_id: str) -> int:
        """Cancel channels with the provider (best-effort) and delete local rows.

        Local rows are deleted even when the provider call fails.

        Returns:
            Number of subscription rows removed.
        """
        subscriptions = await self._repo.list_subscriptions(config_id)
        config = await self._repo.get_config(config_id)
        if not subscriptions:
            if config is not None and config.webhook_id is not None:
                await self._repo.update_config(config_id, webhook_id=None)
            return 0

        if config is not None:
            try:
                provider = await self._registry.open(config, self._credentials)
                for subscription in subscriptions:
                    await provider.cancel_webhook(subscription)
            except Exception as exc:
                logger.warning(
                    "webhook.provider_cancel_failed",
                    config_id=config_id,
                    error=str(exc),
                )

        for subscription in subscriptions:
            await self._repo.delete_subscription(subscription.id)
        if config is not None:
            await self._repo.update_config(config_id, webhook_id=None)

        logger.info("webhook.unregistered", config_id=config_id, removed=len(subscriptions))
        return len(subscriptions)

    async def check_status(self, config_id: str) -> WebhookStatus:
        """Report whether the config's most recent channel is unexpired."""
        subscriptions = await self._repo.list_subscriptions(config_id)
        latest = subscriptions[0] if subscriptions else None
        active = latest is not None and latest.expires_at > self._clock()
        return WebhookStatus(config_id=config_id, active=active, subscription=latest)

    async def renew_all(self) -> RenewalReport:
        """Renew every subscription expiring within the renewal horizon.

        Each subscription is handled independently; a failure is logged and
        the sweep moves on. Subscriptions of disabled or deleted configs are
        dropped without contacting the provider.
        """
        now = self._clock()
        horizon = now + timedelta(hours=self._settings.WEBHOOK_RENEWAL_HORIZON_HOURS)
        report = RenewalReport()

        for subscription in await self._repo.list_expiring_subscriptions(horizon):
            config_id = subscription.sync_config_id
            try:
                config = await self._repo.get_config(config_id)
                if config is None or not config.enabled:
                    await self._repo.delete_subscription(subscription.id)
                    if config is not None:
                        await self._repo.update_config(config_id, webhook_id=None)
                    report.dropped += 1
                    record_webhook_renewal("dropped")
                    logger.info(
                        "webhook.dropped_inactive",
                        config_id=config_id,
                        channel_id=subscription.channel_id,
                    )
                    continue

                await self._renew_one(config, subscription)
                report.renewed += 1
                record_webhook_renewal("renewed")
            except CredentialError as exc:
                # Terminal until the user reconnects
                await self._repo.delete_subscription(subscription.id)
                await self._repo.update_config(
                    config_id, webhook_id=None, needs_reauth=True, last_error=str(exc)
                )
                report.failed += 1
                record_webhook_renewal("failed")
                logger.warning(
                    "webhook.renewal_credentials_rejected",
                    config_id=config_id,
                    error=str(exc),
                )
            except Exception as exc:
                report.failed += 1
                record_webhook_renewal("failed")
                logger.error(
                    "webhook.renewal_failed",
                    config_id=config_id,
                    channel_id=subscription.channel_id,
                    error=str(exc),
                )

        logger.info(
            "webhook.renewal_sweep_complete",
            renewed=report.renewed,
            dropped=report.dropped,
            failed=report.failed,
        )
        return report

    async def _renew_one(
        self, config: SyncConfigRead, subscription: WebhookSubscriptionRead
    ) -> WebhookSubscriptionRead:
        provider = await self._registry.open(config, self._credentials)
        channel = await provider.renew_webhook(subscription, self._callback_url(config))
        stored = await self._repo.create_subscription(
            config.id,
            channel.provider_id,
            channel.resource_id,
            channel.channel_id,
            channel.expires_at,
        )
        await self._repo.delete_subscription(subscription.id)
        await self._repo.update_config(config.id, webhook_id=stored.channel_id)
        logger.info(
            "webhook.renewed",
            config_id=config.id,
            old_channel_id=subscription.channel_id,
            channel_id=stored.channel_id,
            expires_at=stored.expires_at.isoformat(),
        )
        return stored
