"""Bidirectional calendar synchronization.

Exports:
    SyncService: The orchestrator (runs, config management, webhook ingestion).
    WebhookManager: Push-notification channel lifecycle.
    SyncScheduler: Periodic due-run, renewal, and reaper jobs.
    EventSyncHooks: Fire-and-forget hooks for local event writes.
    SyncRepository: Persistence for every sync entity.
"""

from src.calsync.sync.hooks import EventSyncHooks
from src.calsync.sync.repository import SyncRepository
from src.calsync.sync.scheduler import SyncScheduler
from src.calsync.sync.service import SyncService
from src.calsync.sync.webhooks import WebhookManager

__all__ = [
    "EventSyncHooks",
    "SyncRepository",
    "SyncScheduler",
    "SyncService",
    "WebhookManager",
]
