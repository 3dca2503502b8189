"""
Celery Application Configuration

Runs scheduled scrapes on worker deployments, as an alternative to the
in-process APScheduler tick:
- Redis as message broker and result backend
- Task autodiscovery from jobfeed.tasks module
- Beat entry that fires the auto-trigger periodically

Usage:
    # Start worker:
    celery -A jobfeed.celery worker --loglevel=info

    # Start beat scheduler (for periodic tasks):
    celery -A jobfeed.celery beat --loglevel=info

    # Enqueue a run:
    from jobfeed.tasks.scrape import run_scheduled_scrape
    run_scheduled_scrape.delay("auto")
"""

from celery import Celery
from jobfeed.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "jobfeed",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["jobfeed.tasks.scrape"],
)

# Configure Celery
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # One scrape at a time per worker process
    worker_concurrency=1,

    # Result settings
    result_expires=3600,  # Results expire after 1 hour
    task_track_started=True,

    # Retry settings
    task_acks_late=True,  # Acknowledge after completion
    task_reject_on_worker_lost=True,

    task_routes={
        "jobfeed.tasks.scrape.run_scheduled_scrape": {"queue": "scrape"},
    },
    task_default_queue="default",

    # The schedule check inside the run decides skip vs run
    beat_schedule={
        "scrape-tick": {
            "task": "jobfeed.tasks.scrape.run_scheduled_scrape",
            "schedule": max(1, settings.scrape_tick_minutes) * 60.0,
            "args": ("auto",),
        },
    },
)

# Autodiscover tasks
celery_app.autodiscover_tasks(["jobfeed.tasks"])
