"""Exception hierarchy for calendar synchronization.

Every error raised by the sync core derives from SyncError and carries a
``kind`` string so callers (HTTP layer, scheduler, audit log) can tell
configuration problems from credential problems from transient provider
failures without isinstance chains.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync failures."""

    kind = "sync"

    def __init__(self, message: str, *, config_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.config_id = config_id


class ConfigurationError(SyncError):
    """Missing or disabled config, unknown provider type, unsupported feature."""

    kind = "configuration"


class ConfigNotFoundError(ConfigurationError):
    """No config with the requested id exists for the caller."""


class ConfigDisabledError(ConfigurationError):
    """The config exists but is disabled."""


class CredentialError(SyncError):
    """Tokens are missing, expired, or rejected by the provider.

    Signals that the user must reconnect the account; never retried
    automatically.
    """

    kind = "credentials"


class TransientProviderError(SyncError):
    """Network failure, rate limit, or 5xx response from the provider."""

    kind = "transient"

    def __init__(
        self,
        message: str,
        *,
        config_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, config_id=config_id)
        self.status_code = status_code


class RemoteNotFoundError(SyncError):
    """The provider has no such resource (404, or 410 on a single resource)."""

    kind = "not_found"


class SyncTokenInvalidError(SyncError):
    """The incremental cursor was rejected (HTTP 410 Gone)."""

    kind = "cursor"


class SyncInProgressError(SyncError):
    """Another run for the same config holds the run lock."""

    kind = "in_progress"


class WebhookVerificationError(SyncError):
    """An inbound push notification could not be tied to a known config."""

    kind = "webhook_verification"
