"""Pull-side reconciliation -- turns one pulled external event into a local action.

Per external event, in order:
1. Deletion marker: delete the mapped internal event and every mapping of
   it, under any config; ignore markers with no mapping.
2. Mapping exists: skip echoes of a local edit made since the last sync
   and within the echo guard window, skip unchanged change tags, otherwise
   overwrite the internal event. The mapping is refreshed in every case.
3. No mapping: link an unmapped internal event created by the same user
   within the recent-create window when its title matches exactly and its
   start time is compatible.
4. Otherwise create a new internal event and mapping.

Steps 2 and 3 are time-window heuristics. They can merge two distinct
same-titled events created at the same instant, and can miss a duplicate
when clocks drift past the window.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from src.calsync.sync.field_mapping import external_to_internal
from src.calsync.sync.repository import SyncRepository
from src.calsync.sync.schemas import (
    CalendarEventRead,
    EventStatus,
    ExternalEvent,
    SyncConfigRead,
    SyncMappingRead,
)

logger = structlog.get_logger(__name__)

DEFAULT_ECHO_GUARD = timedelta(seconds=30)
DEFAULT_RECENT_CREATE_WINDOW = timedelta(seconds=60)

# Receives the deleting config and the mappings other configs still hold
DeletionCascade = Callable[[SyncConfigRead, list[SyncMappingRead]], Awaitable[None]]


class ReconcileOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    LINKED = "linked"
    ECHO_SKIPPED = "echo_skipped"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    IGNORED = "ignored"


# ── Start-time Compatibility ───────────────────────────────────────────────


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def _local_date(moment: datetime, zone_name: str | None) -> date:
    """Calendar date of an instant, in the event's zone when one is named."""
    moment = _aware(moment)
    if zone_name:
        try:
            return moment.astimezone(ZoneInfo(zone_name)).date()
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("reconcile.unknown_timezone", timezone=zone_name)
    return moment.date()


def starts_compatible(local: CalendarEventRead, remote: ExternalEvent) -> bool:
    """Whether two events plausibly start at the same time.

    Same-typed values must match exactly. An all-day date matches a timed
    value when the timed value falls on that calendar date. Events with no
    start on either side never match.
    """
    if local.start_datetime is not None and remote.start_datetime is not None:
        return _aware(local.start_datetime) == _aware(remote.start_datetime)
    if local.start_date is not None and remote.start_date is not None:
        return local.start_date == remote.start_date
    if local.start_date is not None and remote.start_datetime is not None:
        return local.start_date == _local_date(remote.start_datetime, remote.start_timezone)
    if local.start_datetime is not None and remote.start_date is not None:
        return remote.start_date == _local_date(local.start_datetime, local.start_timezone)
    return False


# ── Reconciler ─────────────────────────────────────────────────────────────


class Reconciler:
    """Applies pulled external events to the internal store for one config.

    Args:
        repository: SyncRepository for mapping and event reads/writes.
        echo_guard: Local edits newer than this are not overwritten by a pull.
        recent_create_window: How far back to look for a just-created local
            event that a pulled event may be echoing.
        on_delete: Handles the mappings other configs hold for an event
            deleted by a pull. Without one they are simply dropped.
    """

    def __init__(
        self,
        repository: SyncRepository,
        echo_guard: timedelta = DEFAULT_ECHO_GUARD,
        recent_create_window: timedelta = DEFAULT_RECENT_CREATE_WINDOW,
        on_delete: DeletionCascade | None = None,
    ) -> None:
        self._repo = repository
        self._echo_guard = echo_guard
        self._recent_window = recent_create_window
        self._on_delete = on_delete

    async def reconcile(
        self, config: SyncConfigRead, external: ExternalEvent, now: datetime
    ) -> ReconcileOutcome:
        """Reconcile one pulled event. Raises on store failures."""
        mapping = await self._repo.get_mapping_by_external(config.id, external.external_id)

        if external.deleted:
            if mapping is None:
                return ReconcileOutcome.IGNORED
            await self._repo.delete_event(mapping.event_id)
            await self._repo.delete_mapping(mapping.id)
            others = [
                m
                for m in await self._repo.list_mappings_for_events([mapping.event_id])
                if m.id != mapping.id
            ]
            logger.info(
                "reconcile.deleted",
                config_id=config.id,
                external_id=external.external_id,
                event_id=mapping.event_id,
                other_mappings=len(others),
            )
            if others:
                if self._on_delete is not None:
                    await self._on_delete(config, others)
                else:
                    for other in others:
                        await self._repo.delete_mapping(other.id)
            return ReconcileOutcome.DELETED

        if mapping is not None:
            local = await self._repo.get_event(mapping.event_id)
            if local is None:
                # Internal event vanished without a hook firing; relink below
                await self._repo.delete_mapping(mapping.id)
                logger.warning(
                    "reconcile.orphan_mapping_removed",
                    config_id=config.id,
                    external_id=external.external_id,
                    event_id=mapping.event_id,
                )
            else:
                edited_since_sync = _aware(local.updated_at) > _aware(mapping.last_synced_at)
                if edited_since_sync and now - _aware(local.updated_at) < self._echo_guard:
                    await self._repo.touch_mapping(mapping.id, external.etag, now)
                    logger.debug(
                        "reconcile.echo_skipped",
                        config_id=config.id,
                        external_id=external.external_id,
                        event_id=local.id,
                    )
                    return ReconcileOutcome.ECHO_SKIPPED

                if external.etag is not None and external.etag == mapping.etag:
                    await self._repo.touch_mapping(mapping.id, external.etag, now)
                    return ReconcileOutcome.UNCHANGED

                await self._repo.update_event(local.id, external_to_internal(external), now)
                await self._repo.touch_mapping(mapping.id, external.etag, now)
                return ReconcileOutcome.UPDATED

        candidate = await self._find_recent_match(config, external, now)
        if candidate is not None:
            await self._repo.create_mapping(
                config.id,
                candidate.id,
                external.external_id,
                config.provider_id,
                external.etag,
                now,
            )
            logger.info(
                "reconcile.linked_recent_create",
                config_id=config.id,
                external_id=external.external_id,
                event_id=candidate.id,
            )
            return ReconcileOutcome.LINKED

        created = await self._repo.create_event(
            config.user_id, external_to_internal(external), now
        )
        await self._repo.create_mapping(
            config.id,
            created.id,
            external.external_id,
            config.provider_id,
            external.etag,
            now,
        )
        return ReconcileOutcome.CREATED

    async def _find_recent_match(
        self, config: SyncConfigRead, external: ExternalEvent, now: datetime
    ) -> CalendarEventRead | None:
        recent = await self._repo.list_events_created_since(
            config.user_id, now - self._recent_window
        )
        for local in recent:
            if local.status == EventStatus.CANCELLED:
                continue
            if local.title != external.summary:
                continue
            if not starts_compatible(local, external):
                continue
            if await self._repo.get_mapping_by_event(config.id, local.id) is not None:
                continue
            return local
        return None
