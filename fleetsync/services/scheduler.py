"""APScheduler setup for the live sync and backfill jobs."""

import logging
from datetime import timedelta
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fleetsync.core.config import get_settings
from fleetsync.core.database import async_session_maker
from fleetsync.services.provider import ProviderClient
from fleetsync.services.sync import SyncService, SyncAlreadyRunningError
from fleetsync.services.history import HistoryBackfillController

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def run_scheduled_sync():
    """Run one live sync cycle."""
    settings = get_settings()
    logger.info("Starting scheduled sync job")

    provider = ProviderClient.from_settings(settings)
    sync_service = SyncService(provider, stale_after=timedelta(minutes=settings.sync_run_stale_minutes))

    async with async_session_maker() as session:
        try:
            summary = await sync_service.run_sync(session, trigger="scheduled")
            logger.info(f"Scheduled sync completed: run {summary.run_id} {summary.status}")
        except SyncAlreadyRunningError:
            logger.warning("Scheduled sync skipped: a sync run is already in progress")
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}")
        finally:
            await provider.close()


async def run_scheduled_backfill():
    """Run one backfill batch if the job is running."""
    settings = get_settings()

    provider = ProviderClient.from_settings(settings)
    controller = HistoryBackfillController.from_settings(provider, settings)

    async with async_session_maker() as session:
        try:
            summary = await controller.run_scheduled_batch(session)
            if summary.status != "skipped":
                logger.info(
                    f"Scheduled backfill batch completed: {summary.windows_processed} windows, "
                    f"{summary.windows_failed} failed"
                )
        except Exception as e:
            logger.error(f"Scheduled backfill batch failed: {e}")
        finally:
            await provider.close()


def start_scheduler():
    """Start the APScheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already started")
        return

    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled by configuration")
        return

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_scheduled_sync,
        IntervalTrigger(minutes=settings.sync_interval_minutes),
        id="live_sync",
        name="Live fleet telemetry sync",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )

    scheduler.add_job(
        run_scheduled_backfill,
        IntervalTrigger(minutes=settings.history_interval_minutes),
        id="history_backfill",
        name="Historical telemetry backfill batch",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )

    scheduler.start()
    logger.info(
        f"Scheduler started - live sync every {settings.sync_interval_minutes} min, "
        f"backfill every {settings.history_interval_minutes} min"
    )


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown()
        scheduler = None
        logger.info("Scheduler stopped")
