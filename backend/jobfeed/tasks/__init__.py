"""
Celery Task Modules

Background tasks for the scrape pipeline:
- scrape.py: scheduled/auto-triggered scrape runs
"""

from jobfeed.tasks.scrape import run_scheduled_scrape

__all__ = [
    "run_scheduled_scrape",
]
