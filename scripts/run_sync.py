#!/usr/bin/env python3
"""
Run a single live sync or backfill batch outside the web app.
Useful for checking provider credentials and response shapes against a real account.
"""

import argparse
import asyncio
import json
import logging
from datetime import timedelta

from fleetsync.core.config import get_settings
from fleetsync.core.database import async_session_maker, init_db
from fleetsync.services.history import HistoryBackfillController
from fleetsync.services.provider import ProviderClient
from fleetsync.services.sync import SyncService


async def main(mode: str, vehicleno: str | None):
    settings = get_settings()
    await init_db()

    provider = ProviderClient.from_settings(settings)
    try:
        async with async_session_maker() as session:
            if mode == "sync":
                print(f"Running live sync against {settings.provider_base_url}...")
                service = SyncService(provider, stale_after=timedelta(minutes=settings.sync_run_stale_minutes))
                summary = await service.run_sync(session, trigger="manual")
            else:
                print(f"Running one backfill batch{f' for {vehicleno}' if vehicleno else ''}...")
                controller = HistoryBackfillController.from_settings(provider, settings)
                summary = await controller.run_once(session, vehicleno=vehicleno)
    finally:
        await provider.close()

    print(json.dumps(summary.to_dict(), indent=2, default=str))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("mode", choices=["sync", "backfill"])
    parser.add_argument("--vehicleno", help="Limit a backfill batch to one vehicle")
    args = parser.parse_args()

    logging.basicConfig(level=get_settings().log_level.upper())
    asyncio.run(main(args.mode, args.vehicleno))
