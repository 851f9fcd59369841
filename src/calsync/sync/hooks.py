"""Local CRUD hooks that keep providers in step with internal event writes.

Called by the event CRUD layer right after a create, update, or delete
commits. Each hook schedules its sync work as a background task and returns
immediately; errors are logged and never reach the caller, so a provider
outage cannot roll back or block a local write.

Exports:
    EventSyncHooks: Fire-and-forget wrappers around the orchestrator fast paths.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable

import structlog

from src.calsync.sync.schemas import SyncResult
from src.calsync.sync.service import SyncService

logger = structlog.get_logger(__name__)


class EventSyncHooks:
    """Schedules push-side sync work after local event writes.

    Args:
        service: SyncService providing sync_specific_events and
            delete_event_mappings.
    """

    def __init__(self, service: SyncService) -> None:
        self._service = service
        self._tasks: set[asyncio.Task] = set()

    def event_created(self, user_id: str, event_id: str) -> asyncio.Task:
        return self._schedule(
            "created", user_id, [event_id],
            self._service.sync_specific_events(user_id, [event_id]),
        )

    def event_updated(self, user_id: str, event_id: str) -> asyncio.Task:
        return self._schedule(
            "updated", user_id, [event_id],
            self._service.sync_specific_events(user_id, [event_id]),
        )

    def events_deleted(self, user_id: str, event_ids: list[str]) -> asyncio.Task:
        return self._schedule(
            "deleted", user_id, event_ids,
            self._service.delete_event_mappings(user_id, event_ids),
        )

    def _schedule(
        self,
        action: str,
        user_id: str,
        event_ids: list[str],
        work: Awaitable[SyncResult],
    ) -> asyncio.Task:
        task = asyncio.create_task(self._run(action, user_id, event_ids, work))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        action: str,
        user_id: str,
        event_ids: list[str],
        work: Awaitable[SyncResult],
    ) -> SyncResult | None:
        try:
            result = await work
        except Exception as exc:
            logger.error(
                "sync_hook.failed",
                action=action,
                user_id=user_id,
                event_ids=event_ids,
                error=str(exc),
            )
            return None

        if result.errors:
            logger.warning(
                "sync_hook.partial_failure",
                action=action,
                user_id=user_id,
                event_ids=event_ids,
                errors=[e.message for e in result.errors],
            )
        return result

    async def drain(self) -> None:
        """Wait for every scheduled hook task to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
