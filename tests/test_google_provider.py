"""Tests for the Google Calendar adapter.

The googleapiclient resource is replaced by a MagicMock via the
service_builder hook, so no network or discovery document is needed.
"""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import MagicMock, patch

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError
from tenacity import wait_none

from src.calsync.sync.exceptions import (
    ConfigurationError,
    CredentialError,
    RemoteNotFoundError,
    SyncError,
    SyncTokenInvalidError,
    TransientProviderError,
)
from src.calsync.sync.providers.google_calendar import GoogleCalendarProvider, translate_error
from src.calsync.sync.schemas import (
    ChangeKind,
    ExternalEvent,
    ProviderType,
    SyncConfigRead,
    SyncDirection,
    WebhookSubscriptionRead,
)
from tests.doubles import T0, Clock, valid_credentials


def _http_error(status: int, reason: str | None = None) -> HttpError:
    error: dict = {"code": status, "message": f"HTTP {status}"}
    if reason:
        error["errors"] = [{"reason": reason, "message": reason}]
    return HttpError(
        resp=httplib2.Response({"status": status}),
        content=json.dumps({"error": error}).encode(),
    )


@pytest.fixture
def config() -> SyncConfigRead:
    return SyncConfigRead(
        id="cfg-1",
        user_id="user-1",
        provider_type=ProviderType.GOOGLE_CALENDAR,
        provider_id="primary",
        direction=SyncDirection.BIDIRECTIONAL,
        settings={"calendar_id": "team@example.com"},
    )


@pytest.fixture
def api() -> MagicMock:
    return MagicMock()


@pytest.fixture
def builder(api) -> MagicMock:
    return MagicMock(return_value=api)


@pytest.fixture
async def provider(builder, config) -> GoogleCalendarProvider:
    adapter = GoogleCalendarProvider(
        client_id="client-id",
        client_secret="client-secret",
        service_builder=builder,
        clock=Clock(),
    )
    await adapter.initialize(config, valid_credentials())
    return adapter


@pytest.fixture
def no_backoff():
    with patch.object(GoogleCalendarProvider._execute.retry, "wait", wait_none()):
        yield


# ── Initialization ───────────────────────────────────────────────────────────


class TestInitialize:
    async def test_builds_service_from_token_pair(self, provider, builder):
        credentials = builder.call_args.args[0]
        assert credentials.token == "access-token"
        assert credentials.refresh_token == "refresh-token"
        assert credentials.client_id == "client-id"
        assert provider.calendar_id == "team@example.com"

    async def test_missing_client_configuration(self, config, builder):
        adapter = GoogleCalendarProvider(client_id="", client_secret="", service_builder=builder)
        with pytest.raises(ConfigurationError, match="GOOGLE_CLIENT_ID"):
            await adapter.initialize(config, valid_credentials())
        builder.assert_not_called()

    async def test_calls_before_initialize_fail(self):
        adapter = GoogleCalendarProvider(client_id="id", client_secret="secret")
        with pytest.raises(ConfigurationError):
            await adapter.pull_events()

    async def test_validate_connection(self, provider, api):
        api.calendarList.return_value.list.return_value.execute.return_value = {"items": []}
        assert await provider.validate_connection() is True

        api.calendarList.return_value.list.return_value.execute.side_effect = _http_error(401)
        assert await provider.validate_connection() is False


# ── Pull ─────────────────────────────────────────────────────────────────────


class TestPullEvents:
    async def test_full_sync_pages_through_window(self, provider, api):
        events = api.events.return_value
        events.list.return_value.execute.side_effect = [
            {
                "items": [
                    {
                        "id": "g1",
                        "summary": "Standup",
                        "etag": '"1"',
                        "start": {"dateTime": "2025-01-06T09:00:00-08:00"},
                        "end": {"dateTime": "2025-01-06T09:15:00-08:00"},
                    }
                ],
                "nextPageToken": "page-2",
            },
            {
                "items": [{"id": "g2", "status": "cancelled"}],
                "nextSyncToken": "sync-1",
            },
        ]

        result = await provider.pull_events()

        assert result.full_sync is True
        assert result.next_cursor == "sync-1"
        assert [e.external_id for e in result.events] == ["g1", "g2"]
        assert result.events[1].deleted is True

        first, second = (c.kwargs for c in events.list.call_args_list)
        assert first["calendarId"] == "team@example.com"
        assert first["maxResults"] == 250
        assert first["singleEvents"] is True
        assert first["timeMin"] == T0.replace(year=2024).isoformat()
        assert first["timeMax"] == T0.replace(year=2027).isoformat()
        assert "syncToken" not in first
        assert second["pageToken"] == "page-2"

    async def test_incremental_pull_uses_sync_token(self, provider, api):
        events = api.events.return_value
        events.list.return_value.execute.return_value = {"items": [], "nextSyncToken": "sync-2"}

        result = await provider.pull_events("sync-1")

        params = events.list.call_args.kwargs
        assert params["syncToken"] == "sync-1"
        assert "timeMin" not in params
        assert result.full_sync is False
        assert result.next_cursor == "sync-2"

    async def test_expired_token_falls_back_to_one_full_sync(self, provider, api):
        events = api.events.return_value
        events.list.return_value.execute.side_effect = [
            _http_error(410),
            {"items": [{"id": "g1", "summary": "A"}], "nextSyncToken": "fresh"},
        ]

        result = await provider.pull_events("stale")

        assert result.full_sync is True
        assert result.next_cursor == "fresh"
        calls = [c.kwargs for c in events.list.call_args_list]
        assert len(calls) == 2
        assert calls[0]["syncToken"] == "stale"
        assert "timeMin" in calls[1]

    async def test_410_on_full_sync_is_not_retried_forever(self, provider, api):
        events = api.events.return_value
        events.list.return_value.execute.side_effect = [_http_error(410), _http_error(410)]

        with pytest.raises(TransientProviderError):
            await provider.pull_events("stale")
        assert events.list.call_count == 2

    async def test_transient_errors_retry_then_raise(self, provider, api, no_backoff):
        request = api.events.return_value.list.return_value
        request.execute.side_effect = _http_error(503)

        with pytest.raises(TransientProviderError):
            await provider.pull_events("sync-1")
        assert request.execute.call_count == 3

    async def test_transient_error_recovers(self, provider, api, no_backoff):
        request = api.events.return_value.list.return_value
        request.execute.side_effect = [
            _http_error(429),
            {"items": [], "nextSyncToken": "sync-2"},
        ]

        result = await provider.pull_events("sync-1")

        assert result.next_cursor == "sync-2"

    async def test_auth_failure_is_not_retried(self, provider, api, no_backoff):
        request = api.events.return_value.list.return_value
        request.execute.side_effect = _http_error(401)

        with pytest.raises(CredentialError):
            await provider.pull_events("sync-1")
        assert request.execute.call_count == 1


# ── Push / Update / Delete ───────────────────────────────────────────────────


class TestWrites:
    async def test_push_returns_id_and_etag(self, provider, api):
        events = api.events.return_value
        events.insert.return_value.execute.return_value = {"id": "g-new", "etag": '"e1"'}

        result = await provider.push_event(ExternalEvent(summary="Planning"))

        assert (result.external_id, result.etag) == ("g-new", '"e1"')
        kwargs = events.insert.call_args.kwargs
        assert kwargs["calendarId"] == "team@example.com"
        assert kwargs["body"]["summary"] == "Planning"

    async def test_update_returns_new_etag(self, provider, api):
        events = api.events.return_value
        events.update.return_value.execute.return_value = {"id": "g1", "etag": '"e2"'}

        etag = await provider.update_event("g1", ExternalEvent(summary="Planning v2"))

        assert etag == '"e2"'
        assert events.update.call_args.kwargs["eventId"] == "g1"

    async def test_update_of_missing_event_raises_not_found(self, provider, api):
        api.events.return_value.update.return_value.execute.side_effect = _http_error(404)
        with pytest.raises(RemoteNotFoundError):
            await provider.update_event("gone", ExternalEvent(summary="x"))

    @pytest.mark.parametrize("status", [404, 410])
    async def test_delete_of_missing_event_is_ignored(self, provider, api, status):
        api.events.return_value.delete.return_value.execute.side_effect = _http_error(status)
        await provider.delete_event("gone")

    async def test_delete_permission_error_propagates(self, provider, api):
        api.events.return_value.delete.return_value.execute.side_effect = _http_error(403)
        with pytest.raises(CredentialError):
            await provider.delete_event("g1")


# ── Push Notifications ───────────────────────────────────────────────────────


def _subscription(channel_id: str = "old-channel") -> WebhookSubscriptionRead:
    return WebhookSubscriptionRead(
        id="sub-1",
        sync_config_id="cfg-1",
        provider_id="primary",
        resource_id="res-old",
        channel_id=channel_id,
        expires_at=T0 + timedelta(hours=2),
    )


class TestWebhooks:
    async def test_setup_webhook_body_and_expiration(self, provider, api):
        events = api.events.return_value
        events.watch.return_value.execute.return_value = {
            "resourceId": "res-1",
            "expiration": str(int((T0 + timedelta(days=7)).timestamp() * 1000)),
        }

        subscription = await provider.setup_webhook("https://calsync.example.com/hook")

        body = events.watch.call_args.kwargs["body"]
        assert body["type"] == "web_hook"
        assert body["address"] == "https://calsync.example.com/hook"
        assert body["token"] == "cfg-1"
        assert subscription.channel_id == body["id"]
        assert subscription.resource_id == "res-1"
        assert subscription.expires_at == T0 + timedelta(days=7)

    async def test_missing_expiration_defaults_to_seven_days(self, provider, api):
        api.events.return_value.watch.return_value.execute.return_value = {"resourceId": "r"}
        subscription = await provider.setup_webhook("https://calsync.example.com/hook")
        assert subscription.expires_at == T0 + timedelta(days=7)

    async def test_renew_creates_before_stopping(self, provider, api):
        order: list[str] = []

        def watch():
            order.append("watch")
            return {"resourceId": "res-new"}

        def stop():
            order.append("stop")
            return {}

        api.events.return_value.watch.return_value.execute.side_effect = watch
        api.channels.return_value.stop.return_value.execute.side_effect = stop

        replacement = await provider.renew_webhook(_subscription(), "https://x/hook")

        assert order == ["watch", "stop"]
        assert api.channels.return_value.stop.call_args.kwargs["body"] == {
            "id": "old-channel",
            "resourceId": "res-old",
        }
        assert replacement.channel_id != "old-channel"

    async def test_renew_tolerates_failed_stop(self, provider, api, no_backoff):
        api.events.return_value.watch.return_value.execute.return_value = {"resourceId": "r"}
        api.channels.return_value.stop.return_value.execute.side_effect = _http_error(500)

        replacement = await provider.renew_webhook(_subscription(), "https://x/hook")

        assert replacement.resource_id == "r"

    async def test_cancel_of_expired_channel_is_ignored(self, provider, api):
        api.channels.return_value.stop.return_value.execute.side_effect = _http_error(404)
        await provider.cancel_webhook(_subscription())

    def test_parse_notification_headers(self):
        notification = GoogleCalendarProvider.parse_notification(
            {
                "X-Goog-Channel-ID": "channel-1",
                "x-goog-resource-id": "res-1",
                "X-Goog-Resource-State": "exists",
                "X-Goog-Channel-Token": "cfg-1",
                "X-Goog-Message-Number": "7",
            }
        )
        assert notification.channel_id == "channel-1"
        assert notification.resource_id == "res-1"
        assert notification.resource_state == "exists"
        assert notification.channel_token == "cfg-1"
        assert notification.message_number == 7

    async def test_payload_changes_come_from_an_incremental_pull(self, provider, api):
        events = api.events.return_value
        events.list.return_value.execute.return_value = {
            "items": [{"id": "g1", "summary": "A"}, {"id": "g2", "status": "cancelled"}],
            "nextSyncToken": "sync-2",
        }
        notification = GoogleCalendarProvider.parse_notification(
            {"X-Goog-Resource-State": "exists", "X-Goog-Channel-Token": "cfg-1"}
        )

        changes = await provider.process_webhook_payload(notification, "sync-1")

        assert events.list.call_args.kwargs["syncToken"] == "sync-1"
        assert [(c.external_id, c.change) for c in changes] == [
            ("g1", ChangeKind.UPDATED),
            ("g2", ChangeKind.DELETED),
        ]

    def test_parse_notification_without_token(self):
        notification = GoogleCalendarProvider.parse_notification({"X-Goog-Resource-State": "sync"})
        assert notification.channel_token is None
        assert notification.message_number is None


# ── Error Translation ────────────────────────────────────────────────────────


class TestTranslateError:
    @pytest.mark.parametrize(
        ("status", "reason", "expected"),
        [
            (401, None, CredentialError),
            (403, None, CredentialError),
            (403, "rateLimitExceeded", TransientProviderError),
            (403, "userRateLimitExceeded", TransientProviderError),
            (429, None, TransientProviderError),
            (500, None, TransientProviderError),
            (503, None, TransientProviderError),
            (404, None, RemoteNotFoundError),
            (410, None, SyncTokenInvalidError),
        ],
    )
    def test_http_status_mapping(self, status, reason, expected):
        translated = translate_error(_http_error(status, reason), "cfg-1")
        assert type(translated) is expected
        assert translated.config_id == "cfg-1"

    def test_unclassified_client_error(self):
        translated = translate_error(_http_error(400, "badRequest"))
        assert type(translated) is SyncError
        assert "badRequest" in str(translated)

    def test_refresh_failure_is_credential_error(self):
        assert isinstance(translate_error(RefreshError("invalid_grant")), CredentialError)

    def test_network_failure_is_transient(self):
        assert isinstance(translate_error(ConnectionResetError()), TransientProviderError)

    def test_sync_errors_and_unknown_errors_pass_through(self):
        original = CredentialError("already translated")
        assert translate_error(original) is original
        unknown = ValueError("bug")
        assert translate_error(unknown) is unknown
