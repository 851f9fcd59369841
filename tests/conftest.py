"""Test fixtures for the calendar sync tests.

Provides:
- A settable clock shared by the repository, services, and fake provider
- InMemorySyncRepository and FakeRemoteCalendar doubles
- SyncService and WebhookManager wired the way the application lifespan
  wires them, with no database, Redis, or network access
"""

from __future__ import annotations

import pytest

from src.calsync.sync.credentials import StoredCredentialProvider
from src.calsync.sync.locks import LocalRunLock
from src.calsync.sync.service import SyncService
from src.calsync.sync.webhooks import WebhookManager
from tests.doubles import (
    Clock,
    FakeRemoteCalendar,
    InMemorySyncRepository,
    make_registry,
    make_settings,
)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def remote(clock) -> FakeRemoteCalendar:
    calendar = FakeRemoteCalendar()
    calendar.clock = clock
    return calendar


@pytest.fixture
def repo(clock) -> InMemorySyncRepository:
    return InMemorySyncRepository(clock)


@pytest.fixture
def registry(remote):
    return make_registry(remote)


@pytest.fixture
def run_lock() -> LocalRunLock:
    return LocalRunLock()


@pytest.fixture
def webhook_manager(repo, registry, settings, clock) -> WebhookManager:
    return WebhookManager(
        repo,
        registry,
        StoredCredentialProvider(clock),
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def service(repo, registry, run_lock, webhook_manager, settings, clock) -> SyncService:
    svc = SyncService(
        repo,
        registry,
        credential_provider=StoredCredentialProvider(clock),
        run_lock=run_lock,
        webhook_manager=webhook_manager,
        settings=settings,
        clock=clock,
    )
    svc._busy_retry_delay = 0
    return svc
