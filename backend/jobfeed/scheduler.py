"""
Background Scheduler - periodic auto-trigger for the scrape pipeline

APScheduler ticks every ``SCRAPE_TICK_MINUTES`` and asks the
orchestrator for an ``auto`` run. The tick itself does not decide
whether a scrape is due; the orchestrator's schedule check (interval,
start time, one-time run, lock) does, so the tick can be frequent.

Skips from the tick are not persisted to history, otherwise every
not-due tick would push a real run out of the capped history.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from jobfeed.config import get_settings
from jobfeed.services.orchestrator import get_orchestrator

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_scrape_tick():
    """Run an auto-triggered scrape if the schedule says it is due."""
    result = await get_orchestrator().run("auto", persist_skips=False)
    if result.skipped:
        logger.debug(f"Scheduled scrape skipped: {result.skip_reason} (next due {result.next_due_at})")
    elif not result.ok:
        logger.error(f"Scheduled scrape {result.run_id} failed: {result.error_message}")


def start_scheduler():
    """Start the background scheduler"""
    settings = get_settings()
    scheduler.add_job(
        scheduled_scrape_tick,
        trigger=IntervalTrigger(minutes=max(1, settings.scrape_tick_minutes)),
        id="scrape_tick",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started: checking scrape schedule every {settings.scrape_tick_minutes} minutes")


def stop_scheduler():
    """Stop the background scheduler"""
    if scheduler.running:
        scheduler.shutdown(wait=False)
