"""
Run-State Store - durable single-row records for the scrape pipeline

Every value lives in its own ``app_settings`` row and is overwritten in
place: the progress snapshot, the time-bounded lock, the cancel flag,
schedule bookkeeping and the capped run history. Pollers read the
snapshot directly and never wait on a running scrape.

Store failures surface as ``RunStateError``; the orchestrator treats
them as fatal for the run.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from jobfeed.models import AppSetting
from jobfeed.schemas import RunProgressSnapshot, ScrapeHistoryEntry
from jobfeed.services.schedule import parse_boolean

logger = logging.getLogger(__name__)

# ==================== Setting Keys ====================

PROGRESS_KEY = "jobs_scrape_progress"
CANCEL_REQUESTED_KEY = "jobs_scrape_cancel_requested"
LOCK_UNTIL_KEY = "jobs_scrape_lock_until"
LAST_SUCCESS_AT_KEY = "jobs_scrape_last_success_at"
LAST_RUN_STATUS_KEY = "jobs_scrape_last_run_status"
LAST_SKIP_REASON_KEY = "jobs_scrape_last_skip_reason"
LAST_RUN_SUMMARY_KEY = "jobs_scrape_last_run_summary"
NEXT_DUE_AT_KEY = "jobs_scrape_next_due_at"
HISTORY_KEY = "jobs_scrape_history"
ONE_TIME_AT_KEY = "jobs_scrape_one_time_at"
LOOKBACK_DAYS_KEY = "jobs_scrape_lookback_days"
ENABLED_KEY = "jobs_scrape_enabled"
INTERVAL_HOURS_KEY = "jobs_scrape_interval_hours"
START_TIME_KEY = "jobs_scrape_start_time"
TIMEZONE_KEY = "jobs_scrape_timezone"
SOURCES_KEY = "jobs_scrape_sources"

RUNTIME_KEYS = (
    ENABLED_KEY,
    INTERVAL_HOURS_KEY,
    START_TIME_KEY,
    TIMEZONE_KEY,
    LOOKBACK_DAYS_KEY,
    ONE_TIME_AT_KEY,
    LAST_SUCCESS_AT_KEY,
    LOCK_UNTIL_KEY,
    LAST_RUN_STATUS_KEY,
    LAST_SKIP_REASON_KEY,
)


class RunStateError(Exception):
    """The durable run-state could not be read or written."""


def _to_stored(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class RunStateStore:
    def __init__(self, session_factory: async_sessionmaker, *, history_max_items: int = 100):
        self._session_factory = session_factory
        self.history_max_items = max(1, history_max_items)

    # ==================== Raw key/value access ====================

    async def get(self, key: str) -> Any:
        values = await self.get_many([key])
        return values.get(key)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AppSetting.key, AppSetting.value).where(AppSetting.key.in_(keys))
                )
                return {row[0]: row[1] for row in result.all()}
        except SQLAlchemyError as exc:
            raise RunStateError(f"Failed to read run state: {exc}") from exc

    async def set(self, key: str, value: Any) -> None:
        await self.set_many({key: value})

    async def set_many(self, entries: Mapping[str, Any]) -> None:
        """Write several keys in one transaction; None deletes the key."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for key, value in entries.items():
                        if value is None:
                            await session.execute(delete(AppSetting).where(AppSetting.key == key))
                        else:
                            await session.merge(AppSetting(key=key, value=_to_stored(value)))
        except SQLAlchemyError as exc:
            raise RunStateError(f"Failed to write run state: {exc}") from exc

    # ==================== Progress snapshot ====================

    async def get_snapshot(self) -> Optional[RunProgressSnapshot]:
        return RunProgressSnapshot.from_stored(await self.get(PROGRESS_KEY))

    async def save_snapshot(self, snapshot: RunProgressSnapshot, **extra: Any) -> None:
        """Persist the snapshot, plus any extra keys in the same transaction."""
        await self.set_many({PROGRESS_KEY: snapshot.to_stored(), **extra})

    # ==================== Cancellation ====================

    async def is_cancel_requested(self) -> bool:
        return parse_boolean(await self.get(CANCEL_REQUESTED_KEY), False)

    async def request_cancel(
        self,
        run_id: str,
        *,
        message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[RunProgressSnapshot]:
        """
        Raise the cancel flag for ``run_id`` while it is still running.

        The snapshot is re-read and written in one transaction, so a run
        that has already finished (or been replaced) is left untouched.
        With ``message`` the snapshot itself is marked as well; without
        it the owning process publishes the flag on its next progress
        write. Returns the snapshot as stored after the call.
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(AppSetting, PROGRESS_KEY, with_for_update=True)
                    snapshot = RunProgressSnapshot.from_stored(row.value if row is not None else None)
                    if snapshot is None or snapshot.state != "running" or snapshot.run_id != run_id:
                        return snapshot

                    await session.merge(AppSetting(key=CANCEL_REQUESTED_KEY, value=True))
                    if message is not None:
                        snapshot = snapshot.model_copy(
                            update={
                                "cancel_requested": True,
                                "updated_at": now or snapshot.updated_at,
                                "message": message,
                            }
                        )
                        row.value = snapshot.to_stored()
                    return snapshot
        except SQLAlchemyError as exc:
            raise RunStateError(f"Failed to request cancellation: {exc}") from exc

    # ==================== History ====================

    async def get_history(self, limit: Optional[int] = None) -> List[ScrapeHistoryEntry]:
        raw = await self.get(HISTORY_KEY)
        history = _parse_history(raw)[: self.history_max_items]
        if limit is not None and limit > 0:
            return history[:limit]
        return history

    async def append_history(self, entry: ScrapeHistoryEntry) -> None:
        current = await self.get_history()
        deduped = [item for item in current if item.run_id != entry.run_id]
        entries = [entry, *deduped][: self.history_max_items]
        await self.set(
            HISTORY_KEY,
            [item.model_dump(mode="json", by_alias=True) for item in entries],
        )


def _parse_history(raw: Any) -> List[ScrapeHistoryEntry]:
    if not isinstance(raw, list):
        return []
    entries = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            entries.append(ScrapeHistoryEntry.model_validate(item))
        except ValueError:
            logger.debug(f"Dropping malformed history entry: {item!r}")
    return entries
