"""Sync orchestrator -- runs pull and push phases for one config and records the outcome.

SyncService is constructed once at startup with its repository, provider
registry, credential provider, and run lock, then handed to the API layer,
the scheduler, and the local CRUD hooks.

Failure semantics:
- Configuration and credential errors are fatal for a run: the operation is
  finalized as failed and the error re-raised to the caller.
- A failed pull (transient provider error) is recorded and the push phase
  still runs.
- Per-item failures are collected into SyncResult.errors and never abort
  the batch.
- Background runs (webhook, scheduler) log and swallow every error; the
  audit record carries the outcome.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog

from src.calsync.config import Settings, get_settings
from src.calsync.core.monitoring import record_sync_items, track_sync_run
from src.calsync.sync.credentials import CredentialProvider, StoredCredentialProvider
from src.calsync.sync.exceptions import (
    ConfigDisabledError,
    ConfigNotFoundError,
    ConfigurationError,
    CredentialError,
    SyncError,
    SyncInProgressError,
    WebhookVerificationError,
)
from src.calsync.sync.field_mapping import internal_to_external
from src.calsync.sync.locks import LocalRunLock, RunLock
from src.calsync.sync.providers.base import CalendarProvider
from src.calsync.sync.providers.registry import ProviderRegistry
from src.calsync.sync.reconciler import Reconciler, ReconcileOutcome
from src.calsync.sync.repository import SyncRepository
from src.calsync.sync.schemas import (
    CalendarEventRead,
    EventStatus,
    OperationKind,
    OperationStatus,
    ProviderType,
    ResourceState,
    SyncConfigCreate,
    SyncConfigRead,
    SyncConfigUpdate,
    SyncDirection,
    SyncItemError,
    SyncMappingRead,
    SyncOperationRead,
    SyncResult,
    WebhookNotification,
)
from src.calsync.sync.webhooks import WebhookManager

logger = structlog.get_logger(__name__)

OPERATION_HISTORY_LIMIT = 20
_ERROR_SUMMARY_ITEMS = 5


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def _summarize_errors(errors: list[SyncItemError]) -> str | None:
    if not errors:
        return None
    summary = "; ".join(e.message for e in errors[:_ERROR_SUMMARY_ITEMS])
    if len(errors) > _ERROR_SUMMARY_ITEMS:
        summary += f" (+{len(errors) - _ERROR_SUMMARY_ITEMS} more)"
    return summary


class SyncService:
    """Coordinates sync runs, config management, and webhook-triggered work.

    Args:
        repository: SyncRepository for all persistence.
        registry: ProviderRegistry used to open adapters.
        credential_provider: Supplies current tokens; defaults to the blob
            stored on the config.
        run_lock: Per-config mutual exclusion; defaults to in-process locks.
        webhook_manager: Used to unregister channels when a config is
            disabled or deleted.
        settings: Application settings (windows, intervals).
        clock: Callable returning the current UTC time.
    """

    def __init__(
        self,
        repository: SyncRepository,
        registry: ProviderRegistry,
        credential_provider: CredentialProvider | None = None,
        run_lock: RunLock | None = None,
        webhook_manager: WebhookManager | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._repo = repository
        self._registry = registry
        self._credentials = credential_provider or StoredCredentialProvider(self._clock)
        self._lock = run_lock or LocalRunLock()
        self._webhooks = webhook_manager
        self._reconciler = Reconciler(
            repository,
            echo_guard=timedelta(seconds=self._settings.ECHO_GUARD_SECONDS),
            recent_create_window=timedelta(seconds=self._settings.RECENT_CREATE_WINDOW_SECONDS),
            on_delete=self._cascade_pull_deletion,
        )
        self._tasks: set[asyncio.Task] = set()
        self._active_background: set[str] = set()
        self._followups: set[str] = set()
        self._busy_retry_delay = 5.0
        self._busy_retry_limit = 3

    @property
    def repository(self) -> SyncRepository:
        return self._repo

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    # ── Config Management ───────────────────────────────────────────────────

    async def create_config(self, user_id: str, data: SyncConfigCreate) -> SyncConfigRead:
        """Create a config after checking its provider type is registered."""
        if not self._registry.is_registered(data.provider_type):
            raise ConfigurationError(f"Unknown provider type: {data.provider_type.value}")
        config = await self._repo.create_config(user_id, data)
        logger.info(
            "sync.config_created",
            config_id=config.id,
            user_id=user_id,
            provider_type=config.provider_type.value,
            direction=config.direction.value,
        )
        return config

    async def list_configs(self, user_id: str) -> list[SyncConfigRead]:
        return await self._repo.list_configs(user_id)

    async def get_config(self, user_id: str, config_id: str) -> SyncConfigRead:
        config = await self._repo.get_user_config(user_id, config_id)
        if config is None:
            raise ConfigNotFoundError(f"Sync config not found: {config_id}", config_id=config_id)
        return config

    async def update_config(
        self, user_id: str, config_id: str, data: SyncConfigUpdate
    ) -> SyncConfigRead:
        """Apply enabled/direction/settings/credentials changes.

        New credentials clear the re-authentication flag. Disabling a config
        unregisters its webhook.
        """
        config = await self.get_config(user_id, config_id)
        fields: dict = {}
        if data.enabled is not None:
            fields["enabled"] = data.enabled
        if data.direction is not None:
            fields["direction"] = data.direction.value
        if data.settings is not None:
            fields["settings"] = data.settings
        if data.credentials is not None:
            fields["credentials"] = data.credentials.model_dump(mode="json")
            fields["needs_reauth"] = False
            fields["last_error"] = None
        if not fields:
            return config

        updated = await self._repo.update_config(config_id, **fields)
        if updated is None:
            raise ConfigNotFoundError(f"Sync config not found: {config_id}", config_id=config_id)

        if config.enabled and data.enabled is False:
            await self._unregister_quietly(config_id)

        logger.info("sync.config_updated", config_id=config_id, fields=sorted(fields))
        return updated

    async def delete_config(self, user_id: str, config_id: str) -> None:
        """Delete a config, its mappings, operations, and subscriptions."""
        await self.get_config(user_id, config_id)
        await self._unregister_quietly(config_id)
        await self._repo.delete_config(config_id)

    async def list_operations(
        self, user_id: str, config_id: str, limit: int = OPERATION_HISTORY_LIMIT
    ) -> list[SyncOperationRead]:
        await self.get_config(user_id, config_id)
        return await self._repo.list_operations(config_id, limit=limit)

    async def validate_config(self, user_id: str, config_id: str) -> bool:
        """Check that the provider accepts the stored credentials."""
        config = await self.get_config(user_id, config_id)
        provider = await self._registry.open(config, self._credentials)
        return await provider.validate_connection()

    async def _unregister_quietly(self, config_id: str) -> None:
        if self._webhooks is None:
            return
        try:
            await self._webhooks.unregister(config_id)
        except Exception as exc:
            logger.warning(
                "sync.webhook_unregister_failed",
                config_id=config_id,
                error=str(exc),
            )

    # ── Orchestrator Run ────────────────────────────────────────────────────

    async def run_sync(self, config_id: str) -> SyncResult:
        """Run pull and/or push phases for one config.

        Raises:
            SyncInProgressError: Another run holds this config's lock.
            ConfigurationError: Config missing, disabled, or unusable.
            CredentialError: Tokens missing or rejected; the config is
                flagged for re-authentication.
        """
        if not await self._lock.try_acquire(config_id):
            raise SyncInProgressError(
                f"A sync is already running for config {config_id}", config_id=config_id
            )
        try:
            return await self._run_locked(config_id)
        finally:
            await self._lock.release(config_id)

    async def _run_locked(self, config_id: str) -> SyncResult:
        config = await self._repo.get_config(config_id)
        if config is None:
            raise ConfigNotFoundError(f"Sync config not found: {config_id}", config_id=config_id)
        if not config.enabled:
            raise ConfigDisabledError(f"Sync config is disabled: {config_id}", config_id=config_id)

        started_at = self._clock()
        previous = await self._repo.get_latest_operation(config_id)
        retry_count = (
            previous.retry_count + 1
            if previous is not None and previous.status == OperationStatus.FAILED
            else 0
        )
        kind = OperationKind.PUSH if config.direction == SyncDirection.PUSH else OperationKind.PULL
        operation = await self._repo.create_operation(config_id, kind, started_at, retry_count)
        result = SyncResult(config_id=config_id, operation_id=operation.id)

        logger.info(
            "sync.run_started",
            config_id=config_id,
            provider_type=config.provider_type.value,
            direction=config.direction.value,
            incremental=bool(config.sync_token),
            retry_count=retry_count,
        )

        async with track_sync_run(config.provider_type.value) as tracker:
            try:
                provider = await self._registry.open(config, self._credentials)
                if config.direction.pulls:
                    await self._pull_phase(config, provider, result)
                if config.direction.pushes:
                    await self._push_phase(config, provider, result)
            except Exception as exc:
                await self._fail_run(config, operation, result, exc)
                raise

            result.success = not result.errors
            tracker["status"] = "completed" if result.success else "failed"
            await self._finish_run(config, operation, result)

        return result

    async def _finish_run(
        self, config: SyncConfigRead, operation: SyncOperationRead, result: SyncResult
    ) -> None:
        now = self._clock()
        error_text = _summarize_errors(result.errors)
        await self._repo.finalize_operation(
            operation.id,
            OperationStatus.COMPLETED if result.success else OperationStatus.FAILED,
            now,
            error=error_text,
            pulled=result.pulled,
            pushed=result.pushed,
            deleted=result.deleted,
        )
        interval = config.sync_interval_minutes(self._settings.SYNC_DEFAULT_INTERVAL_MINUTES)
        await self._repo.update_config(
            config.id,
            last_sync_at=now,
            next_sync_at=now + timedelta(minutes=interval),
            needs_reauth=False,
            last_error=error_text,
        )
        logger.info(
            "sync.run_completed",
            config_id=config.id,
            success=result.success,
            pulled=result.pulled,
            pushed=result.pushed,
            deleted=result.deleted,
            errors=len(result.errors),
        )

    async def _fail_run(
        self,
        config: SyncConfigRead,
        operation: SyncOperationRead,
        result: SyncResult,
        exc: Exception,
    ) -> None:
        """Finalize a run that hit a fatal error, keeping partial counts."""
        now = self._clock()
        message = str(exc) or exc.__class__.__name__
        result.success = False
        result.errors.append(
            SyncItemError(message=message, kind=getattr(exc, "kind", "internal"))
        )
        await self._repo.finalize_operation(
            operation.id,
            OperationStatus.FAILED,
            now,
            error=message,
            pulled=result.pulled,
            pushed=result.pushed,
            deleted=result.deleted,
        )
        interval = config.sync_interval_minutes(self._settings.SYNC_DEFAULT_INTERVAL_MINUTES)
        fields: dict = {
            "last_error": message,
            "next_sync_at": now + timedelta(minutes=interval),
        }
        if isinstance(exc, CredentialError):
            fields["needs_reauth"] = True
        await self._repo.update_config(config.id, **fields)

        log = logger.warning if isinstance(exc, SyncError) else logger.error
        log(
            "sync.run_failed",
            config_id=config.id,
            kind=getattr(exc, "kind", "internal"),
            error=message,
            needs_reauth=isinstance(exc, CredentialError),
        )

    # ── Pull Phase ──────────────────────────────────────────────────────────

    async def _pull_phase(
        self, config: SyncConfigRead, provider: CalendarProvider, result: SyncResult
    ) -> None:
        try:
            pulled = await provider.pull_events(config.sync_token)
        except (CredentialError, ConfigurationError):
            raise
        except SyncError as exc:
            result.errors.append(
                SyncItemError(message=f"Pull failed: {exc}", kind=exc.kind)
            )
            logger.warning("sync.pull_failed", config_id=config.id, kind=exc.kind, error=str(exc))
            return

        failed = 0
        for external in pulled.events:
            try:
                outcome = await self._reconciler.reconcile(config, external, self._clock())
            except Exception as exc:
                failed += 1
                result.errors.append(
                    SyncItemError(
                        external_id=external.external_id,
                        message=f"Failed to process event {external.external_id}: {exc}",
                    )
                )
                logger.error(
                    "sync.inbound_error",
                    config_id=config.id,
                    external_id=external.external_id,
                    error=str(exc),
                )
                continue

            if outcome == ReconcileOutcome.DELETED:
                result.deleted += 1
            elif outcome != ReconcileOutcome.IGNORED:
                result.pulled += 1

        # Persist the cursor even when some items failed
        if pulled.next_cursor:
            await self._repo.update_config(config.id, sync_token=pulled.next_cursor)

        record_sync_items("pull", result.pulled + result.deleted, failed)
        logger.info(
            "sync.inbound_complete",
            config_id=config.id,
            full_sync=pulled.full_sync,
            pulled=result.pulled,
            deleted=result.deleted,
            errors=failed,
        )

    # ── Push Phase ──────────────────────────────────────────────────────────

    async def _push_phase(
        self, config: SyncConfigRead, provider: CalendarProvider, result: SyncResult
    ) -> None:
        pushed_before = result.pushed
        errors_before = len(result.errors)

        for event in await self._repo.list_unmapped_events(config.user_id, config.id):
            if event.status == EventStatus.CANCELLED:
                continue
            await self._push_one(config, provider, event, None, result)

        for event, mapping in await self._repo.list_mapped_events(config.user_id, config.id):
            if _aware(event.updated_at) <= _aware(mapping.last_synced_at):
                continue
            if event.status == EventStatus.CANCELLED:
                continue
            await self._push_one(config, provider, event, mapping, result)

        record_sync_items(
            "push", result.pushed - pushed_before, len(result.errors) - errors_before
        )
        logger.info(
            "sync.outbound_complete",
            config_id=config.id,
            pushed=result.pushed - pushed_before,
            errors=len(result.errors) - errors_before,
        )

    async def _push_one(
        self,
        config: SyncConfigRead,
        provider: CalendarProvider,
        event: CalendarEventRead,
        mapping: SyncMappingRead | None,
        result: SyncResult,
    ) -> None:
        """Create or update one event remotely and record the mapping.

        Credential errors propagate; anything else becomes an item error.
        """
        try:
            payload = internal_to_external(event)
            if mapping is None:
                pushed = await provider.push_event(payload)
                await self._repo.create_mapping(
                    config.id,
                    event.id,
                    pushed.external_id,
                    config.provider_id,
                    pushed.etag,
                    self._clock(),
                )
            else:
                etag = await provider.update_event(mapping.external_id, payload)
                await self._repo.touch_mapping(mapping.id, etag, self._clock())
            result.pushed += 1
        except CredentialError:
            raise
        except Exception as exc:
            action = "push" if mapping is None else "update"
            result.errors.append(
                SyncItemError(
                    entity_id=event.id,
                    external_id=mapping.external_id if mapping else None,
                    message=f"Failed to {action} event {event.id}: {exc}",
                    kind=getattr(exc, "kind", "item"),
                )
            )
            logger.error(
                "sync.outbound_error",
                config_id=config.id,
                event_id=event.id,
                action=action,
                error=str(exc),
            )

    # ── Local CRUD Fast Paths ───────────────────────────────────────────────

    async def _push_configs_for(self, user_id: str) -> list[SyncConfigRead]:
        return [
            c
            for c in await self._repo.list_configs(user_id)
            if c.enabled and c.direction.pushes and not c.needs_reauth
        ]

    async def sync_specific_events(self, user_id: str, event_ids: list[str]) -> SyncResult:
        """Push just-written local events to every push-enabled config of the user.

        Never raises: a sync failure must not block the local write that
        triggered it. When a full run holds a config's lock, a follow-up run
        is queued instead so the events are not pushed twice.
        """
        result = SyncResult(success=True)
        try:
            events = await self._repo.list_events_by_ids(user_id, event_ids)
            if not events:
                return result
            for config in await self._push_configs_for(user_id):
                if not await self._lock.try_acquire(config.id):
                    self.trigger_background_sync(config.id, reason="local_change")
                    continue
                try:
                    provider = await self._registry.open(config, self._credentials)
                    for event in events:
                        if event.status == EventStatus.CANCELLED:
                            continue
                        mapping = await self._repo.get_mapping_by_event(config.id, event.id)
                        if mapping is not None and _aware(event.updated_at) <= _aware(
                            mapping.last_synced_at
                        ):
                            continue
                        await self._push_one(config, provider, event, mapping, result)
                except Exception as exc:
                    result.errors.append(
                        SyncItemError(message=str(exc), kind=getattr(exc, "kind", "internal"))
                    )
                    logger.warning(
                        "sync.fast_path_failed",
                        config_id=config.id,
                        error=str(exc),
                    )
                finally:
                    await self._lock.release(config.id)
        except Exception as exc:
            result.errors.append(SyncItemError(message=str(exc), kind="internal"))
            logger.error("sync.fast_path_error", user_id=user_id, error=str(exc))

        result.success = not result.errors
        return result

    async def delete_event_mappings(self, user_id: str, event_ids: list[str]) -> SyncResult:
        """Delete remote copies of locally deleted events and drop their mappings.

        Remote deletes are best-effort; the local mapping is removed
        regardless. Never raises.
        """
        result = SyncResult(success=True)
        try:
            mappings = await self._repo.list_mappings_for_events(event_ids)
            by_config: dict[str, list[SyncMappingRead]] = {}
            for mapping in mappings:
                by_config.setdefault(mapping.sync_config_id, []).append(mapping)

            for config_id, config_mappings in by_config.items():
                config = await self._repo.get_config(config_id)
                if config is None or config.user_id != user_id:
                    continue
                await self._delete_remote(config, config_mappings, result)
        except Exception as exc:
            result.errors.append(SyncItemError(message=str(exc), kind="internal"))
            logger.error("sync.delete_mappings_error", user_id=user_id, error=str(exc))

        result.success = not result.errors
        return result

    async def _cascade_pull_deletion(
        self, source: SyncConfigRead, mappings: list[SyncMappingRead]
    ) -> None:
        """Propagate a remote deletion pulled by ``source`` to the user's other configs."""
        by_config: dict[str, list[SyncMappingRead]] = {}
        for mapping in mappings:
            by_config.setdefault(mapping.sync_config_id, []).append(mapping)

        cascade = SyncResult(success=True)
        for config_id, config_mappings in by_config.items():
            config = await self._repo.get_config(config_id)
            if config is None or config.user_id != source.user_id:
                for mapping in config_mappings:
                    await self._repo.delete_mapping(mapping.id)
                continue
            await self._delete_remote(config, config_mappings, cascade)

        if cascade.errors:
            logger.warning(
                "sync.pull_deletion_cascade_errors",
                config_id=source.id,
                errors=len(cascade.errors),
            )

    async def _delete_remote(
        self,
        config: SyncConfigRead,
        mappings: list[SyncMappingRead],
        result: SyncResult,
    ) -> None:
        provider: CalendarProvider | None = None
        remote = config.enabled and config.direction.pushes
        operation = await self._repo.create_operation(
            config.id, OperationKind.DELETE, self._clock()
        )
        errors_before = len(result.errors)
        deleted = 0

        if remote:
            try:
                provider = await self._registry.open(config, self._credentials)
            except SyncError as exc:
                result.errors.append(SyncItemError(message=str(exc), kind=exc.kind))
                logger.warning("sync.delete_provider_unavailable", config_id=config.id, error=str(exc))

        for mapping in mappings:
            if provider is not None:
                try:
                    await provider.delete_event(mapping.external_id)
                    deleted += 1
                except Exception as exc:
                    result.errors.append(
                        SyncItemError(
                            entity_id=mapping.event_id,
                            external_id=mapping.external_id,
                            message=f"Failed to delete remote event {mapping.external_id}: {exc}",
                            kind=getattr(exc, "kind", "item"),
                        )
                    )
            await self._repo.delete_mapping(mapping.id)

        result.deleted += deleted
        new_errors = result.errors[errors_before:]
        await self._repo.finalize_operation(
            operation.id,
            OperationStatus.FAILED if new_errors else OperationStatus.COMPLETED,
            self._clock(),
            error=_summarize_errors(new_errors),
            deleted=deleted,
        )
        logger.info(
            "sync.mappings_deleted",
            config_id=config.id,
            mappings=len(mappings),
            remote_deleted=deleted,
            errors=len(new_errors),
        )

    # ── Webhook Ingestion ───────────────────────────────────────────────────

    async def handle_webhook_notification(
        self, provider_type: ProviderType | str, notification: WebhookNotification
    ) -> dict:
        """Verify an inbound notification and trigger background syncs.

        Returns immediately; triggered runs execute as background tasks.

        Raises:
            WebhookVerificationError: The notification carries no token.
        """
        if not notification.channel_token:
            raise WebhookVerificationError("Missing channel token")

        try:
            provider_type = ProviderType(provider_type)
        except ValueError as exc:
            raise WebhookVerificationError(f"Unknown provider type: {provider_type}") from exc

        owner = await self._repo.get_config(notification.channel_token)
        if owner is None or owner.provider_type != provider_type:
            # Channel of a removed config; it expires on its own
            logger.warning(
                "sync.webhook_unknown_token",
                provider_type=provider_type.value,
                channel_id=notification.channel_id,
            )
            return {"status": "ignored", "reason": "unknown channel token"}

        state = notification.resource_state
        if state == ResourceState.SYNC:
            logger.info(
                "sync.webhook_channel_confirmed",
                config_id=owner.id,
                channel_id=notification.channel_id,
            )
            return {"status": "ok", "action": "acknowledged"}

        if state not in (ResourceState.EXISTS, ResourceState.NOT_EXISTS):
            logger.info("sync.webhook_state_ignored", config_id=owner.id, state=str(state))
            return {"status": "ok", "action": "ignored"}

        configs = await self._repo.list_enabled_configs(provider_type.value)
        for config in configs:
            self.trigger_background_sync(config.id, reason="webhook")

        logger.info(
            "sync.webhook_received",
            config_id=owner.id,
            provider_type=provider_type.value,
            message_number=notification.message_number,
            triggered=len(configs),
        )
        return {"status": "ok", "action": "sync_triggered", "configs": len(configs)}

    # ── Background Runs ─────────────────────────────────────────────────────

    def trigger_background_sync(self, config_id: str, reason: str) -> asyncio.Task | None:
        """Start a run without awaiting it.

        A trigger for a config whose background run is already in flight is
        coalesced into a single follow-up run after it finishes.
        """
        if config_id in self._active_background:
            self._followups.add(config_id)
            logger.debug("sync.background_coalesced", config_id=config_id, reason=reason)
            return None
        self._active_background.add(config_id)
        task = asyncio.create_task(self._background_run(config_id, reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _background_run(self, config_id: str, reason: str) -> None:
        busy_retries = 0
        try:
            while True:
                self._followups.discard(config_id)
                try:
                    await self.run_sync(config_id)
                except SyncInProgressError:
                    if busy_retries >= self._busy_retry_limit:
                        logger.warning("sync.background_gave_up_busy", config_id=config_id, reason=reason)
                        return
                    busy_retries += 1
                    self._followups.add(config_id)
                    await asyncio.sleep(self._busy_retry_delay)
                except Exception as exc:
                    logger.error(
                        "sync.background_failed",
                        config_id=config_id,
                        reason=reason,
                        kind=getattr(exc, "kind", "internal"),
                        error=str(exc),
                    )
                if config_id not in self._followups:
                    return
        finally:
            self._active_background.discard(config_id)

    async def drain(self) -> None:
        """Wait for all background runs, including follow-ups, to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Scheduled Work ──────────────────────────────────────────────────────

    async def run_due_syncs(self) -> int:
        """Trigger background runs for enabled configs whose next sync is due."""
        due = [c for c in await self._repo.list_due_configs(self._clock()) if not c.needs_reauth]
        for config in due:
            self.trigger_background_sync(config.id, reason="scheduled")
        if due:
            logger.info("sync.due_runs_triggered", count=len(due))
        return len(due)

    async def reap_stale_operations(self) -> int:
        """Finalize operations left pending past the timeout as failed.

        Operations whose config still holds a run lock are left alone.
        """
        timeout = timedelta(minutes=self._settings.STALE_OPERATION_TIMEOUT_MINUTES)
        now = self._clock()
        reaped = 0
        for operation in await self._repo.list_stale_operations(now - timeout):
            if await self._lock.is_locked(operation.sync_config_id):
                continue
            await self._repo.finalize_operation(
                operation.id,
                OperationStatus.FAILED,
                now,
                error=(
                    "Operation abandoned: still pending after "
                    f"{self._settings.STALE_OPERATION_TIMEOUT_MINUTES} minutes"
                ),
            )
            reaped += 1
        if reaped:
            logger.warning("sync.stale_operations_reaped", count=reaped)
        return reaped
