"""
Scrape Orchestrator - run lifecycle for the ingestion pipeline

One run walks the configured sources in order:

    scrape source -> filter -> mirror PDFs -> bulk write -> publish progress

and moves the durable snapshot through

    idle -> running -> success | failed | cancelled
    idle -> skipped                       (schedule said no)

Single-flight: one run per process (in-memory guard) and one per
deployment (time-bounded lock in the run-state store, refreshed on every
progress write). A manual start may override a lock left behind by a
crashed run, never a run active in this process.

Cancellation is cooperative. A request sets a durable flag; the loop
checks it after each source, so the current source always finishes.

A failing source is recorded in its stats and the run continues; only a
failure of the control loop itself (run-state store unreachable) ends
the run as ``failed``.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Awaitable, Callable, List, Optional, Set

from prometheus_client import Counter, Histogram

from jobfeed.config import get_settings
from jobfeed.schemas import (
    JobPostingRow,
    RunProgressSnapshot,
    ScrapeHistoryEntry,
    SourceScrapeStats,
)
from jobfeed.services.filters import location_in_scope, parse_published_date, within_lookback
from jobfeed.services.job_writer import JobWriter, PersistenceResult, get_job_writer
from jobfeed.services.pdf_cache import PdfCache, get_pdf_cache
from jobfeed.services.run_state import (
    CANCEL_REQUESTED_KEY,
    ENABLED_KEY,
    INTERVAL_HOURS_KEY,
    LAST_RUN_STATUS_KEY,
    LAST_RUN_SUMMARY_KEY,
    LAST_SKIP_REASON_KEY,
    LAST_SUCCESS_AT_KEY,
    LOCK_UNTIL_KEY,
    LOOKBACK_DAYS_KEY,
    NEXT_DUE_AT_KEY,
    ONE_TIME_AT_KEY,
    RUNTIME_KEYS,
    START_TIME_KEY,
    TIMEZONE_KEY,
    RunStateError,
    RunStateStore,
)
from jobfeed.services.schedule import (
    ScheduleDecision,
    ScheduleSettings,
    ScheduleState,
    apply_one_time,
    evaluate,
    lock_until,
    next_due_at,
    parse_datetime,
    parse_interval_hours,
    parse_lookback_days,
    parse_start_time,
    parse_timezone,
    resolve_settings,
    utcnow,
)
from jobfeed.services.scrapers.base import BaseScraper, SourceConfig
from jobfeed.services.sources import SourceRegistry, SourceResolution

logger = logging.getLogger(__name__)

# ==================== Prometheus Metrics ====================

RUN_DURATION = Histogram(
    "jobs_scrape_run_duration_seconds",
    "Wall-clock duration of scrape runs",
    ["trigger"],
)

RUNS_TOTAL = Counter(
    "jobs_scrape_runs_total",
    "Scrape runs by terminal state",
    ["state"],
)

SOURCE_FAILURES = Counter(
    "jobs_scrape_source_failures_total",
    "Sources that failed during a run",
    ["source"],
)

JOBS_PERSISTED = Counter(
    "jobs_scrape_jobs_persisted_total",
    "Job rows handled by the bulk writer",
    ["outcome"],  # inserted, updated, skipped
)

CANCEL_MESSAGE = "Cancellation requested. Waiting for current source to finish."

# Detached runs are referenced here until they finish
_background_tasks: Set[asyncio.Task] = set()


class CancellationToken:
    """Cooperative cancel signal, set locally or through a durable probe."""

    def __init__(self, probe: Optional[Callable[[], Awaitable[bool]]] = None):
        self._event = asyncio.Event()
        self._probe = probe

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def poll(self) -> bool:
        if not self._event.is_set() and self._probe is not None and await self._probe():
            self._event.set()
        return self._event.is_set()


def compute_completion_percent(status: str, processed: int, total: int) -> int:
    if status == "success":
        return 100
    if total <= 0:
        return 0 if status == "failed" else 100
    return max(0, min(100, round(processed / total * 100)))


@dataclass
class RuntimeState:
    settings: ScheduleSettings
    state: ScheduleState
    lookback_days: int
    one_time_at: Optional[datetime] = None


@dataclass
class RunSummary:
    total_sources: int
    lookback_days: int
    sources_processed: int = 0
    scraped_after_filters: int = 0
    inserted: int = 0
    updated: int = 0
    skipped_duplicates: int = 0
    filtered_by_location: int = 0
    filtered_by_date: int = 0
    source_stats: List[SourceScrapeStats] = field(default_factory=list)
    using_fallback_sources: bool = False
    managed_source_count: int = 0
    enabled_managed_source_count: int = 0
    one_time_triggered: bool = False
    cancelled: bool = False

    def add_source(self, stats: SourceScrapeStats) -> None:
        self.source_stats.append(stats)
        self.scraped_after_filters += stats.extracted
        self.inserted += stats.inserted
        self.updated += stats.updated
        self.skipped_duplicates += stats.skipped_duplicates
        self.filtered_by_location += stats.filtered_by_location
        self.filtered_by_date += stats.filtered_by_date

    @property
    def failed_sources(self) -> List[str]:
        return [stats.source for stats in self.source_stats if stats.failed]

    def as_dict(self) -> dict:
        return {
            "sourcesProcessed": self.sources_processed,
            "totalSources": self.total_sources,
            "lookbackDays": self.lookback_days,
            "scrapedAfterFilters": self.scraped_after_filters,
            "inserted": self.inserted,
            "updated": self.updated,
            "skippedDuplicates": self.skipped_duplicates,
            "filteredByLocation": self.filtered_by_location,
            "filteredByDate": self.filtered_by_date,
            "sourceStats": [s.model_dump(mode="json", by_alias=True) for s in self.source_stats],
            "usingFallbackSources": self.using_fallback_sources,
            "managedSourceCount": self.managed_source_count,
            "enabledManagedSourceCount": self.enabled_managed_source_count,
            "oneTimeTriggered": self.one_time_triggered,
            "cancelled": self.cancelled,
        }


@dataclass
class RunResult:
    ok: bool
    run_id: str
    trigger: str
    skipped: bool
    settings: ScheduleSettings
    started_at: datetime
    finished_at: datetime
    skip_reason: Optional[str] = None
    next_due_at: Optional[datetime] = None
    summary: Optional[RunSummary] = None
    error_message: Optional[str] = None

    @property
    def duration_ms(self) -> int:
        return max(0, int((self.finished_at - self.started_at).total_seconds() * 1000))

    def as_dict(self) -> dict:
        payload = {
            "ok": self.ok,
            "runId": self.run_id,
            "trigger": self.trigger,
            "skipped": self.skipped,
            "skipReason": self.skip_reason,
            "nextDueAt": self.next_due_at.isoformat() if self.next_due_at else None,
            "settings": self.settings.as_dict(),
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
            "durationMs": self.duration_ms,
            "errorMessage": self.error_message,
        }
        if self.summary is not None:
            payload.update(self.summary.as_dict())
        return payload


@dataclass
class StartOutcome:
    accepted: bool
    already_running: bool = False
    run_id: Optional[str] = None
    progress: Optional[RunProgressSnapshot] = None
    task: Optional[asyncio.Task] = None


@dataclass
class _RunContext:
    run_id: str
    trigger: str
    started_at: datetime
    runtime: RuntimeState
    resolution: SourceResolution
    one_time_due: bool
    token: CancellationToken
    snapshot: RunProgressSnapshot


@dataclass
class _Begin:
    context: Optional[_RunContext] = None
    skipped: Optional[RunResult] = None
    already_running: bool = False
    progress: Optional[RunProgressSnapshot] = None


class ScrapeOrchestrator:
    def __init__(
        self,
        store: RunStateStore,
        writer: JobWriter,
        pdf_cache: PdfCache,
        scraper: BaseScraper,
        registry: Optional[SourceRegistry] = None,
        *,
        duplicate_mode: str = "skip",
        lock_minutes: int = 20,
        defaults: Optional[ScheduleSettings] = None,
        default_lookback_days: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.writer = writer
        self.pdf_cache = pdf_cache
        self.scraper = scraper
        self.registry = registry or SourceRegistry(store)
        self.duplicate_mode = "update" if duplicate_mode == "update" else "skip"
        self.lock_minutes = lock_minutes
        self.defaults = defaults or ScheduleSettings()
        self.default_lookback_days = default_lookback_days
        self._clock = clock
        self._guard = asyncio.Lock()
        self._active: Optional[_RunContext] = None

    # ==================== Queries ====================

    async def get_snapshot(self) -> Optional[RunProgressSnapshot]:
        return await self.store.get_snapshot()

    async def get_history(self, limit: Optional[int] = None) -> List[ScrapeHistoryEntry]:
        return await self.store.get_history(limit)

    @property
    def active_run_id(self) -> Optional[str]:
        return self._active.run_id if self._active else None

    async def load_runtime(self) -> RuntimeState:
        raw = await self.store.get_many(RUNTIME_KEYS)
        settings = resolve_settings(
            enabled=raw.get(ENABLED_KEY),
            interval_hours=raw.get(INTERVAL_HOURS_KEY),
            start_time=raw.get(START_TIME_KEY),
            timezone_name=raw.get(TIMEZONE_KEY),
            defaults=self.defaults,
        )
        state = ScheduleState(
            last_success_at=parse_datetime(raw.get(LAST_SUCCESS_AT_KEY)),
            lock_until=parse_datetime(raw.get(LOCK_UNTIL_KEY)),
            last_run_status=raw.get(LAST_RUN_STATUS_KEY),
            last_skip_reason=raw.get(LAST_SKIP_REASON_KEY),
        )
        return RuntimeState(
            settings=settings,
            state=state,
            lookback_days=parse_lookback_days(raw.get(LOOKBACK_DAYS_KEY), self.default_lookback_days),
            one_time_at=parse_datetime(raw.get(ONE_TIME_AT_KEY)),
        )

    # ==================== Control ====================

    async def request_cancel(self) -> Optional[RunProgressSnapshot]:
        """Ask the running scrape to stop after its current source; no-op when idle."""
        active = self._active
        if active is not None:
            # The run owns its snapshot and publishes the flag at its next progress write
            active.token.cancel()
            await self.store.request_cancel(active.run_id)
            logger.info(f"Cancellation requested (run {active.run_id})")
            if self._active is not active:
                return await self.store.get_snapshot()
            return active.snapshot.model_copy(
                update={"cancel_requested": True, "message": CANCEL_MESSAGE}
            )

        current = await self.store.get_snapshot()
        if current is None or current.state != "running":
            return current
        current = await self.store.request_cancel(
            current.run_id, message=CANCEL_MESSAGE, now=self._clock()
        )
        logger.info(f"Cancellation requested (run {current.run_id if current else 'none'})")
        return current

    def cancel_local(self) -> None:
        """Signal the in-process run to stop at its next checkpoint."""
        if self._active is not None:
            self._active.token.cancel()

    async def start(self, run_id: Optional[str] = None) -> StartOutcome:
        """
        Start a manual run in the background and return immediately.

        Refuses while a run is active; otherwise the "running" snapshot
        is written before this returns, so pollers see it at once.
        """
        begin = await self._begin(
            "manual",
            run_id or str(uuid.uuid4()),
            ignore_lock_for_manual=True,
            persist_skips=True,
            refuse_if_running=True,
        )
        if begin.context is None:
            progress = begin.progress
            if progress is None and begin.skipped is not None:
                progress = await self.store.get_snapshot()
            return StartOutcome(accepted=False, already_running=begin.already_running, progress=progress)

        task = spawn_background(self._execute(begin.context))
        return StartOutcome(
            accepted=True,
            run_id=begin.context.run_id,
            progress=begin.context.snapshot,
            task=task,
        )

    async def run(
        self,
        trigger: str = "auto",
        *,
        run_id: Optional[str] = None,
        ignore_lock_for_manual: bool = False,
        persist_skips: bool = True,
    ) -> RunResult:
        """Evaluate the schedule and, if due, run to completion."""
        trigger = trigger if trigger in ("manual", "auto") else "auto"
        run_id = run_id or str(uuid.uuid4())
        try:
            begin = await self._begin(
                trigger,
                run_id,
                ignore_lock_for_manual=ignore_lock_for_manual,
                persist_skips=persist_skips,
                refuse_if_running=False,
            )
        except RunStateError as e:
            logger.error(f"run_start_failed run_id={run_id} error={e}")
            now = self._clock()
            RUNS_TOTAL.labels(state="failed").inc()
            return RunResult(
                ok=False,
                run_id=run_id,
                trigger=trigger,
                skipped=False,
                settings=self.defaults,
                started_at=now,
                finished_at=now,
                error_message=str(e),
            )

        if begin.context is None:
            return begin.skipped
        return await self._execute(begin.context)

    # ==================== Lifecycle ====================

    def _lock_is_live(self, snapshot: Optional[RunProgressSnapshot], lock: Optional[datetime], now: datetime) -> bool:
        return (
            snapshot is not None
            and snapshot.state == "running"
            and lock is not None
            and now < lock
        )

    async def _begin(
        self,
        trigger: str,
        run_id: str,
        *,
        ignore_lock_for_manual: bool,
        persist_skips: bool,
        refuse_if_running: bool,
    ) -> _Begin:
        async with self._guard:
            now = self._clock()
            runtime = await self.load_runtime()
            current = await self.store.get_snapshot()
            running_here = self._active is not None
            running = running_here or self._lock_is_live(current, runtime.state.lock_until, now)

            if running and refuse_if_running:
                return _Begin(already_running=True, progress=current)

            if running_here:
                decision = ScheduleDecision(False, "locked", runtime.state.lock_until)
                one_time_due = False
            else:
                decision = evaluate(trigger, runtime.settings, runtime.state, now)
                decision, one_time_due = apply_one_time(decision, trigger, runtime.one_time_at, now)
                if decision.skip_reason == "locked" and trigger == "manual" and ignore_lock_for_manual:
                    logger.warning(f"Manual run {run_id} overriding lock held until {runtime.state.lock_until}")
                    decision = ScheduleDecision(True, None, now)

            if decision.skipped:
                skipped = await self._record_skip(
                    run_id,
                    trigger,
                    now,
                    decision,
                    runtime,
                    persist_skips=persist_skips,
                    write_snapshot=not running,
                )
                return _Begin(skipped=skipped)

            resolution = await self.registry.resolve()
            snapshot = RunProgressSnapshot(
                run_id=run_id,
                trigger=trigger,
                state="running",
                started_at=now,
                updated_at=now,
                total_sources=len(resolution.sources),
                lookback_days=runtime.lookback_days,
                message="Scrape started",
            )
            await self.store.save_snapshot(
                snapshot,
                **{
                    LOCK_UNTIL_KEY: lock_until(now, self.lock_minutes),
                    CANCEL_REQUESTED_KEY: None,
                },
            )
            context = _RunContext(
                run_id=run_id,
                trigger=trigger,
                started_at=now,
                runtime=runtime,
                resolution=resolution,
                one_time_due=one_time_due,
                token=CancellationToken(self.store.is_cancel_requested),
                snapshot=snapshot,
            )
            self._active = context
            logger.info(
                f"Scrape run {run_id} started: trigger={trigger} sources={len(resolution.sources)} "
                f"fallback={resolution.using_fallback}"
            )
            return _Begin(context=context)

    async def _record_skip(
        self,
        run_id: str,
        trigger: str,
        started_at: datetime,
        decision: ScheduleDecision,
        runtime: RuntimeState,
        *,
        persist_skips: bool,
        write_snapshot: bool,
    ) -> RunResult:
        finished_at = self._clock()
        result = RunResult(
            ok=True,
            run_id=run_id,
            trigger=trigger,
            skipped=True,
            skip_reason=decision.skip_reason,
            next_due_at=decision.next_due_at,
            settings=runtime.settings,
            started_at=started_at,
            finished_at=finished_at,
        )
        RUNS_TOTAL.labels(state="skipped").inc()
        logger.info(f"Scrape run {run_id} skipped: trigger={trigger} reason={decision.skip_reason}")
        if not persist_skips:
            return result

        entries = {
            LAST_RUN_STATUS_KEY: "skipped",
            LAST_SKIP_REASON_KEY: decision.skip_reason,
            LAST_RUN_SUMMARY_KEY: result.as_dict(),
            NEXT_DUE_AT_KEY: decision.next_due_at,
        }
        if write_snapshot:
            snapshot = RunProgressSnapshot(
                run_id=run_id,
                trigger=trigger,
                state="skipped",
                started_at=started_at,
                updated_at=finished_at,
                finished_at=finished_at,
                lookback_days=runtime.lookback_days,
                message=decision.skip_reason or "Skipped",
            )
            await self.store.save_snapshot(snapshot, **entries)
        else:
            # A live run owns the snapshot
            await self.store.set_many(entries)

        await self._append_history(
            ScrapeHistoryEntry(
                run_id=run_id,
                trigger=trigger,
                status="skipped",
                started_at=started_at,
                finished_at=finished_at,
                duration_ms=result.duration_ms,
                completion_percent=compute_completion_percent("skipped", 0, 0),
                skip_reason=decision.skip_reason,
            )
        )
        return result

    async def _execute(self, context: _RunContext) -> RunResult:
        started = time.monotonic()
        try:
            summary = await self._scrape_sources(context)
            return await self._finish(context, summary)
        except Exception as e:
            logger.exception(f"Scrape run {context.run_id} failed")
            return await self._finish_failed(context, e)
        finally:
            self._active = None
            RUN_DURATION.labels(trigger=context.trigger).observe(time.monotonic() - started)

    async def _update(self, context: _RunContext, **changes) -> None:
        """Publish progress and extend the lock."""
        if not context.snapshot.cancel_requested and await context.token.poll():
            changes.setdefault("cancel_requested", True)
        now = self._clock()
        context.snapshot = context.snapshot.model_copy(update={**changes, "updated_at": now})
        await self.store.save_snapshot(
            context.snapshot,
            **{LOCK_UNTIL_KEY: lock_until(now, self.lock_minutes)},
        )

    async def _scrape_sources(self, context: _RunContext) -> RunSummary:
        sources = context.resolution.sources
        total = len(sources)
        summary = RunSummary(
            total_sources=total,
            lookback_days=context.runtime.lookback_days,
            using_fallback_sources=context.resolution.using_fallback,
            managed_source_count=len(context.resolution.managed),
            enabled_managed_source_count=len(context.resolution.enabled),
            one_time_triggered=context.one_time_due,
        )
        seen_urls: Set[str] = set()

        for index, source in enumerate(sources):
            await self._update(
                context,
                current_source=source.name,
                processed_sources=index,
                message=f"Processing {source.name} ({index + 1}/{total})",
            )

            stats = await self._process_source(context, source, seen_urls)
            summary.add_source(stats)
            summary.sources_processed = index + 1

            await self._update(
                context,
                current_source=None,
                last_completed_source=source.name,
                processed_sources=index + 1,
                inserted=summary.inserted,
                updated=summary.updated,
                skipped_duplicates=summary.skipped_duplicates,
                message=f"Completed {source.name} ({index + 1}/{total})",
            )

            if await context.token.poll():
                summary.cancelled = True
                logger.info(f"Scrape run {context.run_id} cancelled after {source.name}")
                break

        return summary

    async def _process_source(
        self,
        context: _RunContext,
        source: SourceConfig,
        seen_urls: Set[str],
    ) -> SourceScrapeStats:
        stats = SourceScrapeStats(source=source.name)
        now = self._clock()
        try:
            scraped = await self.scraper.scrape(source)
            if scraped.stats is not None:
                stats = scraped.stats

            rows = []
            for listing in scraped.listings:
                if not location_in_scope(listing.location, source.location_scope):
                    stats.filtered_by_location += 1
                    continue
                published = parse_published_date(listing.published_text, listing.context_text, now)
                if published is None or not within_lookback(published, context.runtime.lookback_days, now):
                    stats.filtered_by_date += 1
                    continue
                if listing.source_url in seen_urls:
                    stats.skipped_duplicates += 1
                    continue
                seen_urls.add(listing.source_url)
                rows.append(
                    JobPostingRow(
                        title=listing.title,
                        company=listing.company,
                        location=listing.location,
                        description=listing.description,
                        source_url=listing.source_url,
                        pdf_source_url=listing.pdf_source_url,
                    )
                )
            stats.extracted = len(rows)

            for row in rows:
                if row.pdf_source_url:
                    row.pdf_cached_url = await self.pdf_cache.cache(row.pdf_source_url)

            persisted = await self.writer.save(rows, on_duplicate=self.duplicate_mode)
            self._count_persisted(persisted)
            stats.inserted = persisted.inserted_count
            stats.updated = persisted.updated_count
            stats.skipped_duplicates += persisted.skipped_duplicate_count
        except Exception as e:
            # One bad source must not abort the run
            stats.failed = True
            stats.error_message = str(e) or e.__class__.__name__
            SOURCE_FAILURES.labels(source=source.name).inc()
            logger.warning(
                "source_failed run_id=%s source=%s error=%s",
                context.run_id,
                source.name,
                stats.error_message,
            )

        logger.info(
            "source_complete run_id=%s source=%s fetched=%s scanned=%d extracted=%d "
            "filtered_location=%d filtered_date=%d inserted=%d updated=%d skipped=%d failed=%s",
            context.run_id,
            source.name,
            stats.fetched,
            stats.containers_scanned,
            stats.extracted,
            stats.filtered_by_location,
            stats.filtered_by_date,
            stats.inserted,
            stats.updated,
            stats.skipped_duplicates,
            stats.failed,
        )
        return stats

    def _count_persisted(self, persisted: PersistenceResult) -> None:
        JOBS_PERSISTED.labels(outcome="inserted").inc(persisted.inserted_count)
        JOBS_PERSISTED.labels(outcome="updated").inc(persisted.updated_count)
        JOBS_PERSISTED.labels(outcome="skipped").inc(persisted.skipped_duplicate_count)

    async def _finish(self, context: _RunContext, summary: RunSummary) -> RunResult:
        finished_at = self._clock()
        state = "cancelled" if summary.cancelled else "success"
        settings = context.runtime.settings
        last_success = finished_at if state == "success" else context.runtime.state.last_success_at
        result = RunResult(
            ok=True,
            run_id=context.run_id,
            trigger=context.trigger,
            skipped=False,
            skip_reason="cancel_requested" if summary.cancelled else None,
            next_due_at=next_due_at(settings, last_success, finished_at),
            settings=settings,
            started_at=context.started_at,
            finished_at=finished_at,
            summary=summary,
        )

        message = "Scrape cancelled" if summary.cancelled else "Scrape completed"
        failed_sources = summary.failed_sources
        if failed_sources:
            message += f" ({len(failed_sources)} source(s) failed: {', '.join(failed_sources)})"

        entries = {
            LAST_RUN_STATUS_KEY: state,
            LAST_SKIP_REASON_KEY: result.skip_reason,
            LAST_RUN_SUMMARY_KEY: result.as_dict(),
            LOCK_UNTIL_KEY: None,
            CANCEL_REQUESTED_KEY: None,
            NEXT_DUE_AT_KEY: result.next_due_at,
        }
        if state == "success":
            entries[LAST_SUCCESS_AT_KEY] = finished_at
        if context.one_time_due:
            entries[ONE_TIME_AT_KEY] = None

        context.snapshot = context.snapshot.model_copy(
            update={
                "state": state,
                "updated_at": finished_at,
                "finished_at": finished_at,
                "current_source": None,
                "processed_sources": summary.sources_processed,
                "total_sources": summary.total_sources,
                "inserted": summary.inserted,
                "updated": summary.updated,
                "skipped_duplicates": summary.skipped_duplicates,
                "message": message,
            }
        )
        await self.store.save_snapshot(context.snapshot, **entries)

        await self._append_history(
            ScrapeHistoryEntry(
                run_id=context.run_id,
                trigger=context.trigger,
                status=state,
                started_at=context.started_at,
                finished_at=finished_at,
                duration_ms=result.duration_ms,
                completion_percent=compute_completion_percent(
                    state, summary.sources_processed, summary.total_sources
                ),
                processed_sources=summary.sources_processed,
                total_sources=summary.total_sources,
                inserted=summary.inserted,
                updated=summary.updated,
                skipped_duplicates=summary.skipped_duplicates,
                skip_reason=result.skip_reason,
                error_message=", ".join(failed_sources) or None,
            )
        )
        RUNS_TOTAL.labels(state=state).inc()
        logger.info(
            f"Scrape run {context.run_id} {state}: processed={summary.sources_processed}/"
            f"{summary.total_sources} inserted={summary.inserted} updated={summary.updated} "
            f"skipped={summary.skipped_duplicates}"
        )
        return result

    async def _finish_failed(self, context: _RunContext, error: BaseException) -> RunResult:
        finished_at = self._clock()
        message = str(error) or error.__class__.__name__
        result = RunResult(
            ok=False,
            run_id=context.run_id,
            trigger=context.trigger,
            skipped=False,
            settings=context.runtime.settings,
            started_at=context.started_at,
            finished_at=finished_at,
            error_message=message,
        )
        RUNS_TOTAL.labels(state="failed").inc()

        entries = {
            LAST_RUN_STATUS_KEY: "failed",
            LAST_RUN_SUMMARY_KEY: result.as_dict(),
            LOCK_UNTIL_KEY: None,
            CANCEL_REQUESTED_KEY: None,
        }
        if context.one_time_due:
            entries[ONE_TIME_AT_KEY] = None
        context.snapshot = context.snapshot.model_copy(
            update={
                "state": "failed",
                "updated_at": finished_at,
                "finished_at": finished_at,
                "current_source": None,
                "message": message,
            }
        )
        try:
            await self.store.save_snapshot(context.snapshot, **entries)
        except RunStateError as e:
            # The lock expires on its own
            logger.error(f"failed_run_record_failed run_id={context.run_id} error={e}")

        await self._append_history(
            ScrapeHistoryEntry(
                run_id=context.run_id,
                trigger=context.trigger,
                status="failed",
                started_at=context.started_at,
                finished_at=finished_at,
                duration_ms=result.duration_ms,
                completion_percent=compute_completion_percent(
                    "failed",
                    context.snapshot.processed_sources,
                    context.snapshot.total_sources,
                ),
                processed_sources=context.snapshot.processed_sources,
                total_sources=context.snapshot.total_sources,
                error_message=message,
            )
        )
        return result

    async def _append_history(self, entry: ScrapeHistoryEntry) -> None:
        try:
            await self.store.append_history(entry)
        except RunStateError as e:
            logger.warning(f"history_append_failed run_id={entry.run_id} error={e}")


# ==================== Background execution ====================

def spawn_background(coro: Awaitable) -> asyncio.Task:
    """Run ``coro`` detached, keeping a reference until it finishes."""
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def drain_background_tasks(timeout: float = 30.0) -> None:
    """Wait for detached runs to reach a checkpoint; cancel stragglers."""
    pending = set(_background_tasks)
    if not pending:
        return
    _, still_running = await asyncio.wait(pending, timeout=timeout)
    for task in still_running:
        logger.warning("Cancelling scrape task that did not finish before shutdown")
        task.cancel()


# ==================== Factory ====================

def build_orchestrator(session_factory=None) -> ScrapeOrchestrator:
    """Wire an orchestrator from settings."""
    from jobfeed.database import get_session_factory
    from jobfeed.services.scrapers.html import HtmlScraper

    settings = get_settings()
    session_factory = session_factory or get_session_factory()
    store = RunStateStore(session_factory, history_max_items=settings.scrape_history_max_items)
    return ScrapeOrchestrator(
        store,
        get_job_writer(session_factory),
        get_pdf_cache(),
        HtmlScraper(),
        SourceRegistry(store),
        duplicate_mode=settings.scrape_duplicate_mode,
        lock_minutes=settings.scrape_lock_minutes,
        defaults=ScheduleSettings(
            enabled=settings.scrape_enabled,
            interval_hours=parse_interval_hours(settings.scrape_interval_hours),
            start_time=parse_start_time(settings.scrape_start_time),
            timezone=parse_timezone(settings.scrape_timezone),
        ),
        default_lookback_days=parse_lookback_days(settings.scrape_lookback_days),
    )


@lru_cache
def get_orchestrator() -> ScrapeOrchestrator:
    """Process-wide orchestrator; its guard is the in-process single-flight lock."""
    return build_orchestrator()
