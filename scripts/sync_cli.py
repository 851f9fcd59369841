#!/usr/bin/env python3
"""Operator CLI for calendar sync maintenance.

Usage:
    python scripts/sync_cli.py run <config_id>
    python scripts/sync_cli.py renew-webhooks
    python scripts/sync_cli.py reap

Connects directly to the database using DATABASE_URL from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.calsync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def _execute(command: str, config_id: str | None) -> int:
    from src.calsync.api.middleware.logging import configure_structlog
    from src.calsync.config import get_settings
    from src.calsync.core.database import close_db, get_session, init_db
    from src.calsync.sync import SyncRepository, SyncService, WebhookManager
    from src.calsync.sync.exceptions import SyncError
    from src.calsync.sync.providers import build_default_registry

    configure_structlog()
    settings = get_settings()
    await init_db()

    repository = SyncRepository(get_session)
    registry = build_default_registry(settings)
    webhooks = WebhookManager(repository, registry, settings=settings)
    service = SyncService(repository, registry, webhook_manager=webhooks, settings=settings)

    try:
        if command == "run":
            try:
                result = await service.run_sync(config_id)
            except SyncError as exc:
                print(f"Sync failed ({exc.kind}): {exc.message}")
                return 1
            print(f"Sync {'succeeded' if result.success else 'finished with errors'}:")
            print(f"  Operation: {result.operation_id}")
            print(f"  Pulled:    {result.pulled}")
            print(f"  Pushed:    {result.pushed}")
            print(f"  Deleted:   {result.deleted}")
            for error in result.errors:
                print(f"  Error:     {error.message}")
            return 0 if result.success else 1

        if command == "renew-webhooks":
            report = await webhooks.renew_all()
            print(f"Renewed: {report.renewed}  Dropped: {report.dropped}  Failed: {report.failed}")
            return 0 if report.failed == 0 else 1

        reaped = await service.reap_stale_operations()
        print(f"Stale operations finalized: {reaped}")
        return 0
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Calendar sync maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Run a sync for one config and wait for the result")
    run_parser.add_argument("config_id", help="Sync config id")
    sub.add_parser("renew-webhooks", help="Renew push channels nearing expiry")
    sub.add_parser("reap", help="Fail operations left pending past the timeout")

    args = parser.parse_args()
    sys.exit(asyncio.run(_execute(args.command, getattr(args, "config_id", None))))


if __name__ == "__main__":
    main()
