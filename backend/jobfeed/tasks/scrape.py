"""
Background Tasks for the Scrape Pipeline

Celery wrapper around the orchestrator entry point, for deployments
that run scrapes on workers instead of the API process.

Each task invocation gets its own event loop and database engine; the
durable lock in the run-state store keeps workers from overlapping.
"""

import asyncio
import logging
import time

from prometheus_client import Counter, Histogram

from jobfeed.celery import celery_app
from jobfeed.database import create_session_factory, init_db
from jobfeed.services.orchestrator import build_orchestrator

logger = logging.getLogger(__name__)

# ==================== Prometheus Metrics ====================

TASK_DURATION = Histogram(
    "celery_task_duration_seconds",
    "Time spent executing Celery tasks",
    ["task_name"]
)

TASK_FAILURES = Counter(
    "celery_task_failures_total",
    "Number of Celery task failures",
    ["task_name"]
)


class ScrapeRunFailed(Exception):
    """The orchestrator reported a failed run."""


# ==================== Helper Functions ====================

async def execute_scrape(trigger: str, persist_skips: bool) -> dict:
    """Run one scrape against a fresh engine and return the run summary."""
    engine, session_factory = create_session_factory()
    try:
        await init_db(engine)
        orchestrator = build_orchestrator(session_factory)
        result = await orchestrator.run(trigger, persist_skips=persist_skips)
        return result.as_dict()
    finally:
        await engine.dispose()


def run_scrape_sync(trigger: str, persist_skips: bool) -> dict:
    """Run the async scrape to completion on a private event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(execute_scrape(trigger, persist_skips))
    finally:
        loop.close()


# ==================== Celery Tasks ====================

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def run_scheduled_scrape(self, trigger: str = "auto", persist_skips: bool = False) -> dict:
    """
    Auto-trigger a scrape run.

    The orchestrator's schedule check decides whether a run is due, so
    this is safe to fire often. A failed run (control loop could not
    reach the run-state store) is retried.

    Args:
        trigger: "auto" (scheduled) or "manual"
        persist_skips: Record not-due skips in run history

    Returns:
        Run summary dict (camelCase keys, as served by the cron endpoint)
    """
    start_time = time.time()
    trigger = "manual" if trigger == "manual" else "auto"

    try:
        result = run_scrape_sync(trigger, persist_skips)
        if not result.get("ok"):
            raise ScrapeRunFailed(result.get("errorMessage") or "scrape failed")
    except Exception as exc:
        TASK_FAILURES.labels(task_name="run_scheduled_scrape").inc()
        logger.error(f"Scheduled scrape failed: {exc}")
        raise self.retry(exc=exc, countdown=60)
    finally:
        duration = time.time() - start_time
        TASK_DURATION.labels(task_name="run_scheduled_scrape").observe(duration)

    if result.get("skipped"):
        logger.info(f"Scheduled scrape skipped: {result.get('skipReason')}")
    else:
        logger.info(
            f"Scheduled scrape {result.get('runId')} finished: "
            f"inserted={result.get('inserted')} skipped={result.get('skippedDuplicates')}"
        )
    return result
