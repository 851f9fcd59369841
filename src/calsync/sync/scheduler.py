"""Background scheduler for periodic sync work.

Provides a lightweight APScheduler wrapper with three interval jobs:
- Due syncs: every SYNC_SCHEDULER_TICK_SECONDS, trigger runs for enabled
  configs whose next_sync_at has passed
- Webhook renewal sweep: every WEBHOOK_RENEWAL_INTERVAL_MINUTES
- Stale operation reaper: every STALE_OPERATION_TIMEOUT_MINUTES

Exports:
    SyncScheduler: Async scheduler driving SyncService and WebhookManager.
"""

from __future__ import annotations

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.calsync.config import Settings
from src.calsync.sync.service import SyncService
from src.calsync.sync.webhooks import WebhookManager

logger = structlog.get_logger(__name__)


class SyncScheduler:
    """Wraps an AsyncIOScheduler with the sync, renewal, and reaper jobs.

    Job errors are logged and never stop the scheduler.

    Args:
        service: SyncService for due runs and the reaper.
        webhooks: WebhookManager for the renewal sweep.
        settings: Interval configuration.
    """

    def __init__(
        self,
        service: SyncService,
        webhooks: WebhookManager,
        settings: Settings,
    ) -> None:
        self._service = service
        self._webhooks = webhooks
        self._settings = settings
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Returns False if disabled in settings."""
        if not self._settings.SCHEDULER_ENABLED:
            logger.info("sync_scheduler.disabled")
            return False

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            self._run_due_syncs,
            trigger=IntervalTrigger(seconds=self._settings.SYNC_SCHEDULER_TICK_SECONDS),
            id="sync_due_runs",
            name="Trigger runs for configs whose next sync is due",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._renew_webhooks,
            trigger=IntervalTrigger(minutes=self._settings.WEBHOOK_RENEWAL_INTERVAL_MINUTES),
            id="sync_webhook_renewal",
            name="Renew push channels nearing expiry",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._reap_stale_operations,
            trigger=IntervalTrigger(minutes=self._settings.STALE_OPERATION_TIMEOUT_MINUTES),
            id="sync_stale_reaper",
            name="Fail operations left pending past the timeout",
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.start()
        self._started = True
        logger.info(
            "sync_scheduler.started",
            jobs=["due_runs", "webhook_renewal", "stale_reaper"],
            tick_seconds=self._settings.SYNC_SCHEDULER_TICK_SECONDS,
        )
        return True

    def stop(self) -> None:
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("sync_scheduler.stopped")

    async def _run_due_syncs(self) -> None:
        try:
            await self._service.run_due_syncs()
        except Exception as exc:
            logger.error("sync_scheduler.due_runs_failed", error=str(exc))

    async def _renew_webhooks(self) -> None:
        try:
            await self._webhooks.renew_all()
        except Exception as exc:
            logger.error("sync_scheduler.renewal_failed", error=str(exc))

    async def _reap_stale_operations(self) -> None:
        try:
            await self._service.reap_stale_operations()
        except Exception as exc:
            logger.error("sync_scheduler.reaper_failed", error=str(exc))
