"""Google Calendar adapter -- Calendar API v3 via google-api-python-client.

Implements CalendarProvider for one Google calendar (``calendar_id`` from the
config settings, default "primary") using OAuth2 user credentials.

Key implementation details:
- Blocking client calls run in asyncio.to_thread
- Transient failures (network, 429, 5xx, rate-limit 403s) wrapped with
  tenacity retry + exponential backoff
- 410 on an incremental list triggers exactly one full-sync fallback
- 401/403 and token refresh failures surface as CredentialError
- Full syncs cover one year back to two years forward, 250 events per page
- Channel renewal creates the new channel before stopping the old one
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

import httplib2
import structlog
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.calsync.sync.exceptions import (
    ConfigurationError,
    CredentialError,
    RemoteNotFoundError,
    SyncError,
    SyncTokenInvalidError,
    TransientProviderError,
)
from src.calsync.sync.field_mapping import from_google_event, to_google_event
from src.calsync.sync.providers.base import CalendarProvider
from src.calsync.sync.schemas import (
    ChangeKind,
    ExternalEvent,
    ProviderCredentials,
    ProviderType,
    PullResult,
    PushResult,
    SyncConfigRead,
    WebhookChange,
    WebhookNotification,
    WebhookSubscriptionRead,
)

logger = structlog.get_logger(__name__)

CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]
TOKEN_URI = "https://oauth2.googleapis.com/token"

PAGE_SIZE = 250
FULL_SYNC_YEARS_BACK = 1
FULL_SYNC_YEARS_FORWARD = 2
DEFAULT_CHANNEL_TTL = timedelta(days=7)

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


def _build_service(credentials: Credentials) -> Any:
    return build("calendar", "v3", credentials=credentials, cache_discovery=False)


def _error_reason(exc: HttpError) -> str:
    details = getattr(exc, "error_details", None) or []
    for detail in details:
        if isinstance(detail, dict) and detail.get("reason"):
            return detail["reason"]
    return ""


def translate_error(exc: Exception, config_id: str | None = None) -> Exception:
    """Map a Google client exception onto the sync error taxonomy.

    Args:
        exc: Exception raised by a client call.
        config_id: Config the call was made for, attached to the result.

    Returns:
        The SyncError subclass instance to raise in its place.
    """
    if isinstance(exc, SyncError):
        return exc
    if isinstance(exc, RefreshError):
        return CredentialError(
            f"Google token refresh failed: {exc}. Please re-authenticate.",
            config_id=config_id,
        )
    if isinstance(exc, HttpError):
        status = int(exc.resp.status)
        reason = _error_reason(exc)
        if status == 410:
            return SyncTokenInvalidError(
                "Google Calendar sync token expired", config_id=config_id
            )
        if status == 404:
            return RemoteNotFoundError(
                "Google Calendar resource not found", config_id=config_id
            )
        if status == 429 or (status == 403 and reason in _RATE_LIMIT_REASONS):
            return TransientProviderError(
                f"Google Calendar rate limited ({status})",
                config_id=config_id,
                status_code=status,
            )
        if status in (401, 403):
            return CredentialError(
                f"Google Calendar authentication failed ({status}). Please re-authenticate.",
                config_id=config_id,
            )
        if status >= 500:
            return TransientProviderError(
                f"Google Calendar server error ({status})",
                config_id=config_id,
                status_code=status,
            )
        return SyncError(
            f"Google Calendar request failed ({status}): {reason or exc}",
            config_id=config_id,
        )
    if isinstance(exc, (TransportError, httplib2.HttpLib2Error, OSError)):
        return TransientProviderError(
            f"Google Calendar unreachable: {exc}", config_id=config_id
        )
    return exc


def _shift_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # Feb 29 -> Feb 28
        return moment.replace(year=moment.year + years, day=28)


def _parse_expiration(value: Any, fallback: datetime) -> datetime:
    """Google reports channel expiration as epoch milliseconds in a string."""
    if value in (None, ""):
        return fallback
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar API v3 adapter.

    Args:
        client_id: OAuth client id used for token refresh.
        client_secret: OAuth client secret used for token refresh.
        service_builder: Builds the API resource from credentials.
        clock: Callable returning the current UTC time.
    """

    provider_type = ProviderType.GOOGLE_CALENDAR
    display_name = "Google Calendar"
    supports_webhooks = True

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        service_builder: Callable[[Credentials], Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._service_builder = service_builder or _build_service
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._config: SyncConfigRead | None = None
        self._service: Any = None

    @property
    def calendar_id(self) -> str:
        return self._require_config().calendar_id

    def _require_config(self) -> SyncConfigRead:
        if self._config is None or self._service is None:
            raise ConfigurationError("Provider not initialized")
        return self._config

    @property
    def _config_id(self) -> str | None:
        return self._config.id if self._config else None

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def initialize(
        self, config: SyncConfigRead, credentials: ProviderCredentials
    ) -> None:
        if not self._client_id or not self._client_secret:
            raise ConfigurationError(
                "Missing Google OAuth client configuration "
                "(GOOGLE_CLIENT_ID or GOOGLE_CLIENT_SECRET)",
                config_id=config.id,
            )
        if not credentials.access_token:
            raise CredentialError("Missing access token for Google Calendar", config_id=config.id)

        expiry = credentials.expires_at
        if expiry is not None and expiry.tzinfo is not None:
            # google-auth compares against naive UTC
            expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)

        google_credentials = Credentials(
            token=credentials.access_token,
            refresh_token=credentials.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self._client_id,
            client_secret=self._client_secret,
            scopes=CALENDAR_SCOPES,
            expiry=expiry,
        )
        self._service = await asyncio.to_thread(self._service_builder, google_credentials)
        self._config = config

        logger.info(
            "google_calendar.initialized",
            config_id=config.id,
            calendar_id=config.calendar_id,
            has_refresh_token=bool(credentials.refresh_token),
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(TransientProviderError),
        reraise=True,
    )
    async def _execute(self, request: Any) -> dict[str, Any]:
        """Run one API request off the event loop, translating errors."""
        try:
            response = await asyncio.to_thread(request.execute)
        except Exception as exc:
            translated = translate_error(exc, self._config_id)
            if translated is exc:
                raise
            raise translated from exc
        return response or {}

    async def validate_connection(self) -> bool:
        self._require_config()
        try:
            await self._execute(self._service.calendarList().list(maxResults=1))
        except SyncError as exc:
            logger.warning(
                "google_calendar.validation_failed",
                config_id=self._config_id,
                kind=exc.kind,
                error=str(exc),
            )
            return False
        return True

    # ── Events ──────────────────────────────────────────────────────────────

    async def pull_events(self, cursor: str | None = None) -> PullResult:
        self._require_config()
        if not cursor:
            return await self._full_sync()
        try:
            return await self._list_events(cursor)
        except SyncTokenInvalidError:
            logger.warning(
                "google_calendar.sync_token_expired",
                config_id=self._config_id,
            )
            return await self._full_sync()

    async def _full_sync(self) -> PullResult:
        try:
            return await self._list_events(None)
        except SyncTokenInvalidError as exc:
            # A window-bounded list has no token to invalidate
            raise TransientProviderError(
                "Google Calendar rejected a full sync with 410", config_id=self._config_id
            ) from exc

    async def _list_events(self, cursor: str | None) -> PullResult:
        params: dict[str, Any] = {
            "calendarId": self.calendar_id,
            "maxResults": PAGE_SIZE,
            "singleEvents": True,
        }
        if cursor:
            params["syncToken"] = cursor
        else:
            now = self._clock()
            params["timeMin"] = _shift_years(now, -FULL_SYNC_YEARS_BACK).isoformat()
            params["timeMax"] = _shift_years(now, FULL_SYNC_YEARS_FORWARD).isoformat()

        events: list[ExternalEvent] = []
        page_token: str | None = None
        pages = 0
        while True:
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            response = await self._execute(self._service.events().list(**page_params))
            pages += 1
            events.extend(from_google_event(item) for item in response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.info(
            "google_calendar.pulled",
            config_id=self._config_id,
            full_sync=cursor is None,
            pages=pages,
            events=len(events),
            deleted=sum(1 for e in events if e.deleted),
        )
        return PullResult(
            events=events,
            next_cursor=response.get("nextSyncToken"),
            full_sync=cursor is None,
        )

    async def push_event(self, event: ExternalEvent) -> PushResult:
        self._require_config()
        response = await self._execute(
            self._service.events().insert(
                calendarId=self.calendar_id, body=to_google_event(event)
            )
        )
        return PushResult(external_id=response["id"], etag=response.get("etag"))

    async def update_event(self, external_id: str, event: ExternalEvent) -> str | None:
        self._require_config()
        response = await self._execute(
            self._service.events().update(
                calendarId=self.calendar_id,
                eventId=external_id,
                body=to_google_event(event),
            )
        )
        return response.get("etag")

    async def delete_event(self, external_id: str) -> None:
        self._require_config()
        try:
            await self._execute(
                self._service.events().delete(
                    calendarId=self.calendar_id, eventId=external_id
                )
            )
        except (RemoteNotFoundError, SyncTokenInvalidError):
            # 404/410: already gone remotely
            logger.info(
                "google_calendar.delete_already_gone",
                config_id=self._config_id,
                external_id=external_id,
            )

    # ── Push Notifications ──────────────────────────────────────────────────

    async def setup_webhook(self, callback_url: str) -> WebhookSubscriptionRead:
        config = self._require_config()
        channel_id = str(uuid.uuid4())
        response = await self._execute(
            self._service.events().watch(
                calendarId=self.calendar_id,
                body={
                    "id": channel_id,
                    "type": "web_hook",
                    "address": callback_url,
                    # Echoed back as X-Goog-Channel-Token on every notification
                    "token": config.id,
                },
            )
        )
        now = self._clock()
        subscription = WebhookSubscriptionRead(
            id=str(uuid.uuid4()),
            sync_config_id=config.id,
            provider_id=config.provider_id,
            resource_id=response.get("resourceId") or channel_id,
            channel_id=channel_id,
            expires_at=_parse_expiration(response.get("expiration"), now + DEFAULT_CHANNEL_TTL),
            created_at=now,
        )
        logger.info(
            "google_calendar.channel_created",
            config_id=config.id,
            channel_id=channel_id,
            expires_at=subscription.expires_at.isoformat(),
        )
        return subscription

    async def renew_webhook(
        self, subscription: WebhookSubscriptionRead, callback_url: str
    ) -> WebhookSubscriptionRead:
        """Open a replacement channel, then stop the old one.

        Google channels cannot be extended. Stopping the old channel is
        best-effort: it expires on its own if the stop call fails.
        """
        replacement = await self.setup_webhook(callback_url)
        try:
            await self.cancel_webhook(subscription)
        except SyncError as exc:
            logger.warning(
                "google_calendar.old_channel_stop_failed",
                config_id=self._config_id,
                channel_id=subscription.channel_id,
                error=str(exc),
            )
        return replacement

    async def cancel_webhook(self, subscription: WebhookSubscriptionRead) -> None:
        self._require_config()
        try:
            await self._execute(
                self._service.channels().stop(
                    body={"id": subscription.channel_id, "resourceId": subscription.resource_id}
                )
            )
        except RemoteNotFoundError:
            logger.info(
                "google_calendar.channel_already_expired",
                config_id=self._config_id,
                channel_id=subscription.channel_id,
            )

    async def process_webhook_payload(
        self, payload: WebhookNotification, cursor: str | None = None
    ) -> list[WebhookChange]:
        """List the changes behind a notification by pulling from ``cursor``.

        Google notifications carry no event data. The pull's next cursor is
        dropped, so a stored cursor is left where it was and the next run
        replays these changes through the reconciler. SyncService does not
        call this; it triggers a background run on every notification.
        """
        result = await self.pull_events(cursor)
        return [
            WebhookChange(
                external_id=event.external_id,
                change=ChangeKind.DELETED if event.deleted else ChangeKind.UPDATED,
            )
            for event in result.events
        ]

    @staticmethod
    def parse_notification(headers: Mapping[str, str]) -> WebhookNotification:
        lowered = {k.lower(): v for k, v in headers.items()}
        message_number = lowered.get("x-goog-message-number")
        return WebhookNotification(
            channel_id=lowered.get("x-goog-channel-id"),
            resource_id=lowered.get("x-goog-resource-id"),
            resource_state=lowered.get("x-goog-resource-state"),
            channel_token=lowered.get("x-goog-channel-token"),
            message_number=int(message_number) if message_number and message_number.isdigit() else None,
        )
