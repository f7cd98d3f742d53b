"""APScheduler setup for the periodic refresh."""

import datetime
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


def create_scheduler(orchestrator) -> AsyncIOScheduler:
    """Create the scheduler; the first poll fires as soon as it starts."""
    from bus_tracker.config import settings

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        orchestrator.poll,
        "interval",
        seconds=settings.poll_interval_seconds,
        id="poll_buses",
        name="Poll Metrobus for bus positions",
        next_run_time=datetime.datetime.now(datetime.timezone.utc),
        max_instances=1,
        coalesce=True,
    )

    return scheduler
