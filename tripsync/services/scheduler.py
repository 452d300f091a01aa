"""APScheduler setup for periodic sync jobs."""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tripsync.core.config import get_settings
from tripsync.services.sync import SyncService

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def run_scheduled_sync(sync_service: SyncService) -> None:
    """Run the periodic sync job."""
    settings = get_settings()
    logger.info("Starting scheduled sync job")

    try:
        result = await sync_service.sync_all(
            fetch_trip_details=settings.fetch_trip_details,
            details_rate_limit_ms=settings.details_rate_limit_ms,
            details_batch_size=settings.details_batch_size,
        )
        logger.info(f"Scheduled sync completed: {result}")
    except Exception as e:
        # Sync state rows already carry the error for inspection
        logger.error(f"Scheduled sync failed: {e}")


def start_scheduler(sync_service: SyncService) -> None:
    """Start the APScheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already started")
        return

    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_scheduled_sync,
        IntervalTrigger(minutes=settings.sync_interval_minutes),
        args=[sync_service],
        id="periodic_sync",
        name="Periodic bikeshare sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started - sync every {settings.sync_interval_minutes} minutes")


def stop_scheduler() -> None:
    """Stop the APScheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown()
        scheduler = None
        logger.info("Scheduler stopped")
