"""Credential providers -- supply the current OAuth token pair for a config.

Token acquisition and storage belong to the upstream auth layer. The sync
core only asks for whatever token pair is current at adapter initialization
and converts absence or expiry into CredentialError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone

from pydantic import ValidationError

from src.calsync.sync.exceptions import CredentialError
from src.calsync.sync.schemas import ProviderCredentials, SyncConfigRead


class CredentialProvider(ABC):
    """Returns the current credentials for a config's user and provider."""

    @abstractmethod
    async def get_credentials(self, config: SyncConfigRead) -> ProviderCredentials:
        """Return current credentials or raise CredentialError."""
        ...


class StoredCredentialProvider(CredentialProvider):
    """Reads the credential blob stored on the config row itself.

    Args:
        clock: Callable returning the current UTC time.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def get_credentials(self, config: SyncConfigRead) -> ProviderCredentials:
        if not config.credentials:
            raise CredentialError(
                "No credentials stored for this connection; reconnect the account",
                config_id=config.id,
            )
        try:
            credentials = ProviderCredentials.model_validate(config.credentials)
        except ValidationError as exc:
            raise CredentialError(
                f"Stored credentials are malformed: {exc.error_count()} invalid field(s)",
                config_id=config.id,
            ) from exc

        if not credentials.access_token:
            raise CredentialError("Missing access token", config_id=config.id)
        if credentials.is_expired(self._clock()):
            raise CredentialError(
                "Access token expired and no refresh token is available",
                config_id=config.id,
            )
        return credentials
