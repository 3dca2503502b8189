"""
Tests for Background Scrape Triggers

Tests cover:
- Celery app configuration (broker, routes, beat entry)
- run_scheduled_scrape task outcomes and retries
- Engine lifecycle per task invocation
- APScheduler tick delegates to the orchestrator without persisting skips
"""

from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from jobfeed.celery import celery_app
from jobfeed.scheduler import scheduled_scrape_tick
from jobfeed.services.orchestrator import RunResult
from jobfeed.services.schedule import ScheduleSettings
from jobfeed.tasks.scrape import ScrapeRunFailed, execute_scrape, run_scheduled_scrape

NOW = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)


def run_result(ok: bool = True, **overrides) -> RunResult:
    fields = dict(
        ok=ok,
        run_id="run-1",
        trigger="auto",
        skipped=False,
        settings=ScheduleSettings(),
        started_at=NOW,
        finished_at=NOW,
    )
    fields.update(overrides)
    return RunResult(**fields)


class TestCeleryApp:
    """Test Celery app configuration."""

    def test_celery_app_exists(self):
        assert celery_app.main == "jobfeed"

    def test_celery_uses_redis_broker(self):
        assert "redis" in celery_app.conf.broker_url

    def test_celery_uses_redis_backend(self):
        assert "redis" in celery_app.conf.result_backend

    def test_scrape_task_is_routed_to_scrape_queue(self):
        routes = celery_app.conf.task_routes
        assert routes["jobfeed.tasks.scrape.run_scheduled_scrape"] == {"queue": "scrape"}

    def test_beat_fires_auto_trigger(self):
        entry = celery_app.conf.beat_schedule["scrape-tick"]
        assert entry["task"] == "jobfeed.tasks.scrape.run_scheduled_scrape"
        assert entry["args"] == ("auto",)


class TestRunScheduledScrape:
    """Test run_scheduled_scrape task."""

    def test_is_celery_task(self):
        assert hasattr(run_scheduled_scrape, "delay")
        assert run_scheduled_scrape.max_retries == 3

    @patch("jobfeed.tasks.scrape.run_scrape_sync")
    def test_returns_run_summary(self, mock_run):
        mock_run.return_value = run_result().as_dict()

        result = run_scheduled_scrape.run()

        mock_run.assert_called_once_with("auto", False)
        assert result["runId"] == "run-1"

    @patch("jobfeed.tasks.scrape.run_scrape_sync")
    def test_unknown_trigger_falls_back_to_auto(self, mock_run):
        mock_run.return_value = run_result().as_dict()

        run_scheduled_scrape.run("weekly", True)

        mock_run.assert_called_once_with("auto", True)

    @patch("jobfeed.tasks.scrape.run_scrape_sync")
    def test_skipped_run_is_not_retried(self, mock_run):
        mock_run.return_value = run_result(skipped=True, skip_reason="not_due").as_dict()

        result = run_scheduled_scrape.run()

        assert result["skipped"] is True

    @patch("jobfeed.tasks.scrape.TASK_FAILURES")
    @patch("jobfeed.tasks.scrape.run_scrape_sync")
    def test_failed_run_raises_for_retry(self, mock_run, mock_failures):
        mock_run.return_value = run_result(ok=False, error_message="database is locked").as_dict()

        # Called directly, Task.retry re-raises the original error
        with pytest.raises(ScrapeRunFailed):
            run_scheduled_scrape.run()

        mock_failures.labels.assert_called_with(task_name="run_scheduled_scrape")

    @patch("jobfeed.tasks.scrape.TASK_DURATION")
    @patch("jobfeed.tasks.scrape.run_scrape_sync")
    def test_records_duration(self, mock_run, mock_metric):
        mock_run.return_value = run_result().as_dict()

        run_scheduled_scrape.run()

        mock_metric.labels.assert_called_with(task_name="run_scheduled_scrape")


class TestExecuteScrape:
    """Each invocation owns its engine."""

    @pytest.mark.asyncio
    async def test_disposes_engine_after_run(self):
        engine = MagicMock()
        engine.dispose = AsyncMock()
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(return_value=run_result())

        with patch("jobfeed.tasks.scrape.create_session_factory", return_value=(engine, MagicMock())), \
                patch("jobfeed.tasks.scrape.init_db", AsyncMock()) as mock_init, \
                patch("jobfeed.tasks.scrape.build_orchestrator", return_value=orchestrator):
            result = await execute_scrape("auto", False)

        mock_init.assert_awaited_once_with(engine)
        orchestrator.run.assert_awaited_once_with("auto", persist_skips=False)
        engine.dispose.assert_awaited_once()
        assert result["ok"] is True

    @pytest.mark.asyncio
    async def test_disposes_engine_on_error(self):
        engine = MagicMock()
        engine.dispose = AsyncMock()

        with patch("jobfeed.tasks.scrape.create_session_factory", return_value=(engine, MagicMock())), \
                patch("jobfeed.tasks.scrape.init_db", AsyncMock(side_effect=OSError("disk full"))):
            with pytest.raises(OSError):
                await execute_scrape("auto", False)

        engine.dispose.assert_awaited_once()


class TestSchedulerTick:
    @pytest.mark.asyncio
    async def test_tick_runs_auto_without_persisting_skips(self):
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(return_value=run_result(skipped=True, skip_reason="not_due"))

        with patch("jobfeed.scheduler.get_orchestrator", return_value=orchestrator):
            await scheduled_scrape_tick()

        orchestrator.run.assert_awaited_once_with("auto", persist_skips=False)
