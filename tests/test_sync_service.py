"""Tests for the SyncService orchestrator.

Uses InMemorySyncRepository and FakeCalendarProvider doubles (see
tests/doubles.py) to exercise full pull/push runs, failure handling, the
local CRUD fast paths, webhook ingestion, background coalescing, and the
scheduled sweeps without a database or network.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from src.calsync.sync.exceptions import (
    ConfigDisabledError,
    ConfigNotFoundError,
    CredentialError,
    SyncInProgressError,
    TransientProviderError,
    WebhookVerificationError,
)
from src.calsync.sync.schemas import (
    CalendarEventCreate,
    CalendarEventUpdate,
    EventStatus,
    ExternalEvent,
    OperationKind,
    OperationStatus,
    ProviderCredentials,
    SyncConfigCreate,
    SyncConfigUpdate,
    SyncDirection,
)
from tests.doubles import notification, valid_credentials

USER_ID = "user-1"
STANDUP_START = datetime.fromisoformat("2025-01-06T09:00:00-08:00")


async def _make_config(service, direction=SyncDirection.BIDIRECTIONAL, **overrides):
    data = {
        "provider_id": "primary",
        "direction": direction,
        "credentials": valid_credentials(),
    }
    data.update(overrides)
    return await service.create_config(USER_ID, SyncConfigCreate(**data))


def _standup(external_id: str = "ext-1", **overrides) -> ExternalEvent:
    fields = {
        "external_id": external_id,
        "summary": "Standup",
        "start_datetime": STANDUP_START,
        "end_datetime": STANDUP_START + timedelta(minutes=15),
    }
    fields.update(overrides)
    return ExternalEvent(**fields)


async def _local_event(repo, now: datetime, title: str = "Planning", **overrides):
    fields = {"title": title, "start_datetime": now + timedelta(days=1)}
    fields.update(overrides)
    return await repo.create_event(USER_ID, CalendarEventCreate(**fields), now)


def _mapping_snapshot(repo) -> set[tuple[str, str, str]]:
    return {(m.id, m.event_id, m.external_id) for m in repo.mappings.values()}


# ── Pull Scenarios ───────────────────────────────────────────────────────────


class TestPullScenarios:
    """End-to-end pull behavior for a bidirectional config."""

    async def test_first_pull_creates_event_and_mapping(self, service, repo, remote):
        config = await _make_config(service)
        remote.put(_standup())

        result = await service.run_sync(config.id)

        assert result.success is True
        assert result.pulled == 1
        assert len(repo.events) == 1
        event = next(iter(repo.events.values()))
        assert event.title == "Standup"
        mappings = await repo.list_mappings_for_config(config.id)
        assert [m.external_id for m in mappings] == ["ext-1"]
        assert mappings[0].event_id == event.id

    async def test_unchanged_repull_refreshes_mapping_only(self, service, repo, remote, clock):
        config = await _make_config(service)
        remote.put(_standup())
        await service.run_sync(config.id)
        before = _mapping_snapshot(repo)

        clock.advance(minutes=5)
        remote.pending.append(remote.events["ext-1"])
        result = await service.run_sync(config.id)

        assert result.success is True
        assert len(repo.events) == 1
        assert _mapping_snapshot(repo) == before
        mapping = await repo.get_mapping_by_external(config.id, "ext-1")
        assert mapping.last_synced_at == clock.now

    async def test_recent_local_create_is_linked_not_duplicated(
        self, service, repo, remote, clock
    ):
        config = await _make_config(service)
        local = await _local_event(
            repo, clock.now, title="Standup", start_datetime=STANDUP_START
        )
        clock.advance(seconds=5)
        remote.put(_standup())

        result = await service.run_sync(config.id)

        assert result.success is True
        assert list(repo.events) == [local.id]
        mapping = await repo.get_mapping_by_external(config.id, "ext-1")
        assert mapping.event_id == local.id
        # The linked event is not pushed again
        assert remote.calls_named("push") == []

    async def test_remote_change_updates_local_event(self, service, repo, remote, clock):
        config = await _make_config(service)
        remote.put(_standup())
        await service.run_sync(config.id)

        clock.advance(minutes=10)
        remote.put(_standup(summary="Standup (moved)", etag=None))
        result = await service.run_sync(config.id)

        assert result.pulled == 1
        event = next(iter(repo.events.values()))
        assert event.title == "Standup (moved)"
        assert event.updated_at == clock.now

    async def test_remote_cancellation_deletes_local_event(self, service, repo, remote, clock):
        config = await _make_config(service)
        remote.put(_standup())
        await service.run_sync(config.id)

        clock.advance(minutes=10)
        remote.cancel("ext-1")
        result = await service.run_sync(config.id)

        assert result.deleted == 1
        assert repo.events == {}
        assert repo.mappings == {}

    async def test_cancellation_for_unknown_event_is_ignored(self, service, repo, remote):
        config = await _make_config(service)
        await service.run_sync(config.id)
        remote.cancel("never-seen")

        result = await service.run_sync(config.id)

        assert result.success is True
        assert result.deleted == 0
        assert result.pulled == 0

    async def test_second_run_is_idempotent(self, service, repo, remote, clock):
        config = await _make_config(service)
        await _local_event(repo, clock.now - timedelta(minutes=10), title="Local")
        remote.put(_standup())

        first = await service.run_sync(config.id)
        assert first.pulled == 1
        assert first.pushed == 1
        events_before = set(repo.events)
        mappings_before = _mapping_snapshot(repo)

        clock.advance(minutes=1)
        second = await service.run_sync(config.id)

        assert second.success is True
        assert second.pushed == 0
        assert set(repo.events) == events_before
        assert _mapping_snapshot(repo) == mappings_before

    async def test_pushed_event_echo_is_not_duplicated(self, service, repo, remote, clock):
        config = await _make_config(service)
        event = await _local_event(repo, clock.now)
        await service.run_sync(config.id)
        assert len(remote.pending) == 1

        clock.advance(seconds=5)
        result = await service.run_sync(config.id)

        assert result.success is True
        assert list(repo.events) == [event.id]
        assert len(repo.mappings) == 1
        assert repo.events[event.id].title == "Planning"

    async def test_back_to_back_remote_changes_both_apply(self, service, repo, remote, clock):
        config = await _make_config(service)
        remote.put(_standup())
        await service.run_sync(config.id)

        clock.advance(minutes=5)
        remote.put(_standup(summary="Standup v2"))
        await service.run_sync(config.id)
        clock.advance(seconds=10)
        remote.put(_standup(summary="Standup v3"))
        result = await service.run_sync(config.id)

        assert result.pulled == 1
        event = next(iter(repo.events.values()))
        assert event.title == "Standup v3"
        mapping = await repo.get_mapping_by_external(config.id, "ext-1")
        assert mapping.etag == remote.events["ext-1"].etag
        assert remote.calls_named("update") == []

    async def test_remote_deletion_reaches_other_configs(self, service, repo, remote, clock):
        source = await _make_config(service, direction=SyncDirection.PULL)
        mirror = await _make_config(service, direction=SyncDirection.PUSH, provider_id="work")
        remote.put(_standup())
        await service.run_sync(source.id)
        await service.run_sync(mirror.id)
        event_id = next(iter(repo.events))
        mirrored = await repo.get_mapping_by_event(mirror.id, event_id)
        assert mirrored is not None

        remote.pending.clear()
        clock.advance(minutes=10)
        remote.cancel("ext-1")
        result = await service.run_sync(source.id)

        assert result.deleted == 1
        assert repo.events == {}
        assert repo.mappings == {}
        assert remote.calls_named("delete") == [mirrored.external_id]
        assert mirrored.external_id not in remote.events
        operation = await repo.get_latest_operation(mirror.id)
        assert operation.operation == OperationKind.DELETE
        assert operation.status == OperationStatus.COMPLETED

    async def test_cursor_is_persisted_and_used_next_run(self, service, repo, remote):
        config = await _make_config(service)

        await service.run_sync(config.id)
        await service.run_sync(config.id)

        pulls = remote.calls_named("pull")
        assert pulls == [None, "cursor-1"]
        stored = await repo.get_config(config.id)
        assert stored.sync_token == "cursor-2"

    async def test_cursor_persisted_even_when_an_item_fails(self, service, repo, remote):
        config = await _make_config(service)
        remote.put(_standup("ext-1"))
        remote.put(_standup("ext-2", summary="Retro"))
        original_create = repo.create_event

        async def failing_create(user_id, data, now):
            if data.title == "Retro":
                raise RuntimeError("disk full")
            return await original_create(user_id, data, now)

        with patch.object(repo, "create_event", side_effect=failing_create):
            result = await service.run_sync(config.id)

        assert result.success is False
        assert result.pulled == 1
        assert len(result.errors) == 1
        assert result.errors[0].external_id == "ext-2"
        stored = await repo.get_config(config.id)
        assert stored.sync_token == "cursor-1"

    async def test_pull_only_config_never_pushes(self, service, repo, remote, clock):
        config = await _make_config(service, direction=SyncDirection.PULL)
        await _local_event(repo, clock.now)

        result = await service.run_sync(config.id)

        assert result.pushed == 0
        assert remote.calls_named("push") == []


# ── Push Phase ───────────────────────────────────────────────────────────────


class TestPushPhase:
    """Outbound candidates and per-item failures."""

    async def test_unmapped_local_events_are_pushed(self, service, repo, remote, clock):
        config = await _make_config(service, direction=SyncDirection.PUSH)
        event = await _local_event(repo, clock.now)

        result = await service.run_sync(config.id)

        assert result.pushed == 1
        mapping = await repo.get_mapping_by_event(config.id, event.id)
        assert mapping is not None
        assert mapping.external_id in remote.events
        assert remote.calls_named("pull") == []

    async def test_cancelled_local_events_are_not_pushed(self, service, repo, remote, clock):
        config = await _make_config(service, direction=SyncDirection.PUSH)
        await _local_event(repo, clock.now, status=EventStatus.CANCELLED)

        result = await service.run_sync(config.id)

        assert result.pushed == 0
        assert remote.calls_named("push") == []

    async def test_locally_edited_mapped_event_is_updated_remotely(
        self, service, repo, remote, clock
    ):
        config = await _make_config(service, direction=SyncDirection.PUSH)
        event = await _local_event(repo, clock.now)
        await service.run_sync(config.id)
        mapping = await repo.get_mapping_by_event(config.id, event.id)

        clock.advance(minutes=2)
        await repo.update_event(event.id, CalendarEventUpdate(title="Planning v2"), clock.now)
        clock.advance(seconds=1)
        result = await service.run_sync(config.id)

        assert result.pushed == 1
        assert remote.calls_named("update") == [mapping.external_id]
        assert remote.events[mapping.external_id].summary == "Planning v2"
        refreshed = await repo.get_mapping_by_event(config.id, event.id)
        assert refreshed.etag == remote.events[mapping.external_id].etag

    async def test_unchanged_mapped_event_is_not_pushed_again(self, service, repo, remote, clock):
        config = await _make_config(service, direction=SyncDirection.PUSH)
        await _local_event(repo, clock.now)
        await service.run_sync(config.id)

        clock.advance(minutes=5)
        result = await service.run_sync(config.id)

        assert result.pushed == 0
        assert len(remote.calls_named("push")) == 1
        assert remote.calls_named("update") == []

    async def test_item_failure_does_not_abort_batch(self, service, repo, remote, clock):
        config = await _make_config(service, direction=SyncDirection.PUSH)
        bad = await _local_event(repo, clock.now, title="Bad")
        await _local_event(repo, clock.now, title="Good")
        remote.push_errors["Bad"] = TransientProviderError("rate limited")

        result = await service.run_sync(config.id)

        assert result.success is False
        assert result.pushed == 1
        assert len(result.errors) == 1
        assert result.errors[0].entity_id == bad.id
        assert result.errors[0].kind == "transient"
        operation = await repo.get_latest_operation(config.id)
        assert operation.status == OperationStatus.FAILED
        assert operation.pushed_count == 1
        assert "rate limited" in operation.error


# ── Failure Handling ─────────────────────────────────────────────────────────


class TestRunFailures:
    """Run-level errors, audit records, and retry accounting."""

    async def test_missing_config_raises(self, service):
        with pytest.raises(ConfigNotFoundError):
            await service.run_sync("00000000-0000-0000-0000-000000000000")

    async def test_disabled_config_raises(self, service):
        config = await _make_config(service, enabled=False)
        with pytest.raises(ConfigDisabledError):
            await service.run_sync(config.id)

    async def test_credential_error_flags_reauth(self, service, repo, remote):
        config = await _make_config(service)
        remote.initialize_error = CredentialError("token revoked")

        with pytest.raises(CredentialError):
            await service.run_sync(config.id)

        stored = await repo.get_config(config.id)
        assert stored.needs_reauth is True
        assert stored.last_error == "token revoked"
        operation = await repo.get_latest_operation(config.id)
        assert operation.status == OperationStatus.FAILED
        assert operation.completed_at is not None

    async def test_missing_credentials_raise_credential_error(self, service, repo):
        config = await _make_config(service, credentials=None)

        with pytest.raises(CredentialError):
            await service.run_sync(config.id)

        assert (await repo.get_config(config.id)).needs_reauth is True

    async def test_new_credentials_clear_reauth(self, service, repo):
        config = await _make_config(service)
        await repo.update_config(config.id, needs_reauth=True, last_error="expired")

        updated = await service.update_config(
            USER_ID,
            config.id,
            SyncConfigUpdate(credentials=ProviderCredentials(access_token="fresh")),
        )

        assert updated.needs_reauth is False
        assert updated.last_error is None

    async def test_transient_pull_failure_still_runs_push(self, service, repo, remote, clock):
        config = await _make_config(service)
        await _local_event(repo, clock.now)
        remote.pull_error = TransientProviderError("503 from provider")

        result = await service.run_sync(config.id)

        assert result.success is False
        assert result.pushed == 1
        assert result.errors[0].message.startswith("Pull failed")
        assert result.errors[0].kind == "transient"

    async def test_retry_count_follows_previous_failure(self, service, repo, remote):
        config = await _make_config(service)
        remote.pull_error = TransientProviderError("down")
        await service.run_sync(config.id)
        await service.run_sync(config.id)
        remote.pull_error = None
        await service.run_sync(config.id)
        await service.run_sync(config.id)

        operations = list(reversed(await repo.list_operations(config.id)))
        assert [op.retry_count for op in operations] == [0, 1, 2, 0]
        assert [op.status for op in operations] == [
            OperationStatus.FAILED,
            OperationStatus.FAILED,
            OperationStatus.COMPLETED,
            OperationStatus.COMPLETED,
        ]

    async def test_success_schedules_next_run(self, service, repo, clock):
        config = await _make_config(service, settings={"sync_interval_minutes": 15})

        await service.run_sync(config.id)

        stored = await repo.get_config(config.id)
        assert stored.last_sync_at == clock.now
        assert stored.next_sync_at == clock.now + timedelta(minutes=15)

    async def test_operation_counts_are_recorded(self, service, repo, remote):
        config = await _make_config(service)
        remote.put(_standup())

        result = await service.run_sync(config.id)

        operation = await repo.get_latest_operation(config.id)
        assert operation.id == result.operation_id
        assert operation.operation == OperationKind.PULL
        assert operation.status == OperationStatus.COMPLETED
        assert operation.pulled_count == 1

    async def test_overlapping_run_is_rejected(self, service, run_lock):
        config = await _make_config(service)
        await run_lock.try_acquire(config.id)

        with pytest.raises(SyncInProgressError):
            await service.run_sync(config.id)

        await run_lock.release(config.id)
        result = await service.run_sync(config.id)
        assert result.success is True


# ── Config Management ────────────────────────────────────────────────────────


class TestConfigManagement:
    async def test_list_is_scoped_and_newest_first(self, service):
        first = await _make_config(service)
        second = await _make_config(service, provider_id="work")
        await service.create_config(
            "someone-else", SyncConfigCreate(provider_id="primary")
        )

        configs = await service.list_configs(USER_ID)

        assert [c.id for c in configs] == [second.id, first.id]

    async def test_other_users_config_is_not_found(self, service):
        config = await _make_config(service)
        with pytest.raises(ConfigNotFoundError):
            await service.get_config("someone-else", config.id)

    async def test_delete_cascades(self, service, repo, remote, webhook_manager):
        config = await _make_config(service)
        remote.put(_standup())
        await service.run_sync(config.id)
        await webhook_manager.register(config.id)

        await service.delete_config(USER_ID, config.id)

        assert repo.configs == {}
        assert repo.mappings == {}
        assert repo.operations == {}
        assert repo.subscriptions == {}
        assert len(remote.calls_named("cancel_webhook")) == 1
        # Internal events are kept
        assert len(repo.events) == 1

    async def test_disabling_unregisters_webhook(self, service, repo, webhook_manager):
        config = await _make_config(service)
        await webhook_manager.register(config.id)

        updated = await service.update_config(
            USER_ID, config.id, SyncConfigUpdate(enabled=False)
        )

        assert updated.enabled is False
        assert (await repo.get_config(config.id)).webhook_id is None
        assert repo.subscriptions == {}

    async def test_validate_config(self, service, remote):
        config = await _make_config(service)
        assert await service.validate_config(USER_ID, config.id) is True
        remote.valid = False
        assert await service.validate_config(USER_ID, config.id) is False

    async def test_operation_history_is_limited(self, service, repo):
        config = await _make_config(service)
        for _ in range(22):
            await service.run_sync(config.id)

        history = await service.list_operations(USER_ID, config.id)

        assert len(history) == 20
        assert history[0].started_at > history[-1].started_at


# ── Local CRUD Fast Paths ────────────────────────────────────────────────────


class TestFastPaths:
    """sync_specific_events and delete_event_mappings."""

    async def test_specific_event_is_pushed_to_push_configs(self, service, repo, remote, clock):
        push_config = await _make_config(service)
        pull_config = await _make_config(service, direction=SyncDirection.PULL, provider_id="ro")
        event = await _local_event(repo, clock.now)

        result = await service.sync_specific_events(USER_ID, [event.id])

        assert result.success is True
        assert result.pushed == 1
        assert await repo.get_mapping_by_event(push_config.id, event.id) is not None
        assert await repo.get_mapping_by_event(pull_config.id, event.id) is None

    async def test_specific_event_update_uses_existing_mapping(self, service, repo, remote, clock):
        config = await _make_config(service)
        event = await _local_event(repo, clock.now)
        await service.sync_specific_events(USER_ID, [event.id])
        mapping = await repo.get_mapping_by_event(config.id, event.id)

        clock.advance(minutes=1)
        await repo.update_event(event.id, CalendarEventUpdate(location="Room 4"), clock.now)
        clock.advance(seconds=1)
        result = await service.sync_specific_events(USER_ID, [event.id])

        assert result.pushed == 1
        assert remote.calls_named("update") == [mapping.external_id]

    async def test_reauth_configs_are_skipped(self, service, repo, remote, clock):
        config = await _make_config(service)
        await repo.update_config(config.id, needs_reauth=True)
        event = await _local_event(repo, clock.now)

        result = await service.sync_specific_events(USER_ID, [event.id])

        assert result.pushed == 0
        assert remote.calls_named("push") == []

    async def test_busy_config_queues_background_run(self, service, repo, run_lock, clock):
        config = await _make_config(service)
        event = await _local_event(repo, clock.now)
        await run_lock.try_acquire(config.id)

        with patch.object(service, "trigger_background_sync") as trigger:
            result = await service.sync_specific_events(USER_ID, [event.id])

        trigger.assert_called_once_with(config.id, reason="local_change")
        assert result.pushed == 0

    async def test_fast_path_never_raises(self, service, repo, remote, clock):
        config = await _make_config(service)
        event = await _local_event(repo, clock.now)
        remote.initialize_error = CredentialError("revoked")

        result = await service.sync_specific_events(USER_ID, [event.id])

        assert result.success is False
        assert result.errors[0].kind == "credentials"
        assert await repo.get_mapping_by_event(config.id, event.id) is None

    async def test_delete_removes_remote_copy_and_mapping(self, service, repo, remote, clock):
        config = await _make_config(service)
        event = await _local_event(repo, clock.now)
        await service.sync_specific_events(USER_ID, [event.id])
        mapping = await repo.get_mapping_by_event(config.id, event.id)

        await repo.delete_event(event.id)
        result = await service.delete_event_mappings(USER_ID, [event.id])

        assert result.success is True
        assert result.deleted == 1
        assert mapping.external_id not in remote.events
        assert repo.mappings == {}
        operation = await repo.get_latest_operation(config.id)
        assert operation.operation == OperationKind.DELETE
        assert operation.status == OperationStatus.COMPLETED

    async def test_delete_drops_mapping_even_when_remote_fails(self, service, repo, remote, clock):
        config = await _make_config(service)
        event = await _local_event(repo, clock.now)
        await service.sync_specific_events(USER_ID, [event.id])
        remote.delete_error = TransientProviderError("timeout")

        result = await service.delete_event_mappings(USER_ID, [event.id])

        assert result.success is False
        assert repo.mappings == {}
        operation = await repo.get_latest_operation(config.id)
        assert operation.status == OperationStatus.FAILED


# ── Webhook Ingestion ────────────────────────────────────────────────────────


class TestWebhookIngestion:
    async def test_missing_token_is_rejected(self, service):
        with pytest.raises(WebhookVerificationError):
            await service.handle_webhook_notification("google-calendar", notification(None))

    async def test_unknown_token_is_ignored(self, service):
        result = await service.handle_webhook_notification(
            "google-calendar", notification("00000000-0000-0000-0000-000000000000")
        )
        assert result["status"] == "ignored"

    async def test_sync_handshake_is_acknowledged(self, service):
        config = await _make_config(service)
        with patch.object(service, "trigger_background_sync") as trigger:
            result = await service.handle_webhook_notification(
                "google-calendar", notification(config.id, state="sync")
            )
        assert result == {"status": "ok", "action": "acknowledged"}
        trigger.assert_not_called()

    async def test_change_triggers_enabled_configs(self, service, repo):
        first = await _make_config(service)
        second = await _make_config(service, provider_id="work")
        await _make_config(service, provider_id="off", enabled=False)

        with patch.object(service, "trigger_background_sync") as trigger:
            result = await service.handle_webhook_notification(
                "google-calendar", notification(first.id, state="exists")
            )

        assert result == {"status": "ok", "action": "sync_triggered", "configs": 2}
        triggered = {call.args[0] for call in trigger.call_args_list}
        assert triggered == {first.id, second.id}


# ── Background Runs ──────────────────────────────────────────────────────────


class TestBackgroundRuns:
    async def test_triggers_during_a_run_coalesce_into_one_followup(self, service, repo, remote):
        config = await _make_config(service)
        remote.pull_gate = asyncio.Event()

        assert service.trigger_background_sync(config.id, reason="webhook") is not None
        for _ in range(5):
            await asyncio.sleep(0)
        assert service.trigger_background_sync(config.id, reason="webhook") is None
        assert service.trigger_background_sync(config.id, reason="webhook") is None

        remote.pull_gate.set()
        await service.drain()

        assert len(repo.operations) == 2

    async def test_background_run_gives_up_while_lock_is_held(self, service, repo, run_lock):
        config = await _make_config(service)
        await run_lock.try_acquire(config.id)

        service.trigger_background_sync(config.id, reason="scheduled")
        await service.drain()

        assert repo.operations == {}

    async def test_background_errors_are_swallowed(self, service, repo, remote):
        config = await _make_config(service)
        remote.initialize_error = CredentialError("revoked")

        service.trigger_background_sync(config.id, reason="webhook")
        await service.drain()

        assert (await repo.get_config(config.id)).needs_reauth is True


# ── Scheduled Sweeps ─────────────────────────────────────────────────────────


class TestScheduledWork:
    async def test_due_configs_are_triggered(self, service, repo, clock):
        due = await _make_config(service)
        later = await _make_config(service, provider_id="later")
        reauth = await _make_config(service, provider_id="reauth")
        await repo.update_config(later.id, next_sync_at=clock.now + timedelta(minutes=5))
        await repo.update_config(reauth.id, needs_reauth=True)

        with patch.object(service, "trigger_background_sync") as trigger:
            count = await service.run_due_syncs()

        assert count == 1
        trigger.assert_called_once_with(due.id, reason="scheduled")

    async def test_reaper_fails_abandoned_operations(self, service, repo, clock):
        config = await _make_config(service)
        stale = await repo.create_operation(config.id, OperationKind.PULL, clock.now)
        clock.advance(minutes=31)

        reaped = await service.reap_stale_operations()

        assert reaped == 1
        record = repo.operations[stale.id]
        assert record.status == OperationStatus.FAILED
        assert "abandoned" in record.error

    async def test_reaper_skips_locked_configs(self, service, repo, clock, run_lock):
        config = await _make_config(service)
        await repo.create_operation(config.id, OperationKind.PULL, clock.now)
        clock.advance(minutes=31)
        await run_lock.try_acquire(config.id)

        assert await service.reap_stale_operations() == 0

    async def test_recent_pending_operations_are_left_alone(self, service, repo, clock):
        config = await _make_config(service)
        await repo.create_operation(config.id, OperationKind.PULL, clock.now)
        clock.advance(minutes=5)

        assert await service.reap_stale_operations() == 0
