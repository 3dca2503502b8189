"""
Scrape schedule evaluation

Pure functions deciding whether a trigger should run now:

    locked   - another run holds the time-bounded lock (all triggers)
    disabled - auto scraping switched off (auto only)
    waiting_for_start_time - never succeeded, today's start time not reached
    not_due  - last success + interval is still in the future
    waiting_for_one_time - a one-time run is scheduled later (see apply_one_time)

Manual triggers skip the due checks but still respect the lock unless
the caller explicitly overrides it. All datetimes are timezone-aware UTC.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_ENABLED = True
DEFAULT_INTERVAL_HOURS = 6
DEFAULT_START_TIME = "06:00"
DEFAULT_TIMEZONE = "Asia/Kolkata"
MIN_INTERVAL_HOURS = 1
MAX_INTERVAL_HOURS = 168
DEFAULT_LOOKBACK_DAYS = 10
MIN_LOOKBACK_DAYS = 1
MAX_LOOKBACK_DAYS = 365

_TRUE_VALUES = {"1", "true", "yes", "on", "enabled"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass
class ScheduleSettings:
    enabled: bool = DEFAULT_ENABLED
    interval_hours: int = DEFAULT_INTERVAL_HOURS
    start_time: str = DEFAULT_START_TIME
    timezone: str = DEFAULT_TIMEZONE

    def as_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "intervalHours": self.interval_hours,
            "startTime": self.start_time,
            "timezone": self.timezone,
        }


@dataclass
class ScheduleState:
    last_success_at: Optional[datetime] = None
    lock_until: Optional[datetime] = None
    last_run_status: Optional[str] = None
    last_skip_reason: Optional[str] = None


@dataclass
class ScheduleDecision:
    should_run: bool
    skip_reason: Optional[str]
    next_due_at: Optional[datetime]

    @property
    def skipped(self) -> bool:
        return not self.should_run


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_boolean(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
    return fallback


def parse_bounded_int(value: Any, *, default: int, minimum: int, maximum: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        parsed = int(value.strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return max(minimum, min(maximum, parsed))


def parse_interval_hours(value: Any, default: int = DEFAULT_INTERVAL_HOURS) -> int:
    return parse_bounded_int(value, default=default, minimum=MIN_INTERVAL_HOURS, maximum=MAX_INTERVAL_HOURS)


def parse_lookback_days(value: Any, default: int = DEFAULT_LOOKBACK_DAYS) -> int:
    return parse_bounded_int(value, default=default, minimum=MIN_LOOKBACK_DAYS, maximum=MAX_LOOKBACK_DAYS)


def parse_start_time(value: Any, default: str = DEFAULT_START_TIME) -> str:
    match = _TIME_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if not match:
        return default
    hour, minute = int(match.group(1)), int(match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return default
    return f"{hour:02d}:{minute:02d}"


def parse_timezone(value: Any, default: str = DEFAULT_TIMEZONE) -> str:
    if not isinstance(value, str) or not value.strip():
        return default
    candidate = value.strip()
    try:
        ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        return default
    return candidate


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def resolve_settings(
    *,
    enabled: Any = None,
    interval_hours: Any = None,
    start_time: Any = None,
    timezone_name: Any = None,
    defaults: Optional[ScheduleSettings] = None,
) -> ScheduleSettings:
    """Build settings from raw stored values, falling back to ``defaults``."""
    base = defaults or ScheduleSettings()
    return ScheduleSettings(
        enabled=parse_boolean(enabled, base.enabled),
        interval_hours=parse_interval_hours(interval_hours, base.interval_hours),
        start_time=parse_start_time(start_time, base.start_time),
        timezone=parse_timezone(timezone_name, base.timezone),
    )


def first_run_candidate(now: datetime, settings: ScheduleSettings) -> datetime:
    """Now if today's start time has passed in the schedule timezone, else today's start time."""
    zone = ZoneInfo(settings.timezone)
    local_now = now.astimezone(zone)
    hour, minute = (int(part) for part in settings.start_time.split(":"))
    local_start = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if local_now >= local_start:
        return now
    return local_start.astimezone(timezone.utc)


def next_due_at(
    settings: ScheduleSettings,
    last_success_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    if not settings.enabled:
        return None
    now = now or utcnow()
    if last_success_at is None:
        return first_run_candidate(now, settings)
    return last_success_at + timedelta(hours=settings.interval_hours)


def evaluate(
    trigger: str,
    settings: ScheduleSettings,
    state: ScheduleState,
    now: Optional[datetime] = None,
) -> ScheduleDecision:
    now = now or utcnow()

    if state.lock_until is not None and now < state.lock_until:
        return ScheduleDecision(should_run=False, skip_reason="locked", next_due_at=state.lock_until)

    if trigger == "manual":
        return ScheduleDecision(should_run=True, skip_reason=None, next_due_at=now)

    if not settings.enabled:
        return ScheduleDecision(should_run=False, skip_reason="disabled", next_due_at=None)

    due_at = next_due_at(settings, state.last_success_at, now)
    if due_at is not None and now < due_at:
        reason = "not_due" if state.last_success_at else "waiting_for_start_time"
        return ScheduleDecision(should_run=False, skip_reason=reason, next_due_at=due_at)

    return ScheduleDecision(should_run=True, skip_reason=None, next_due_at=due_at)


def lock_until(now: datetime, lock_minutes: int) -> datetime:
    return now + timedelta(minutes=max(1, lock_minutes))


def apply_one_time(
    decision: ScheduleDecision,
    trigger: str,
    one_time_at: Optional[datetime],
    now: datetime,
) -> "tuple[ScheduleDecision, bool]":
    """
    Fold an optional one-time run into an auto decision.

    Returns the adjusted decision and whether the one-time run fired. A
    due one-time run forces an auto run unless the lock is held.
    """
    if trigger != "auto" or one_time_at is None or decision.skip_reason == "locked":
        return decision, False

    if now >= one_time_at:
        return ScheduleDecision(should_run=True, skip_reason=None, next_due_at=decision.next_due_at), True

    if decision.should_run:
        return decision, False

    candidates = [value for value in (decision.next_due_at, one_time_at) if value is not None]
    return (
        ScheduleDecision(
            should_run=False,
            skip_reason="waiting_for_one_time",
            next_due_at=min(candidates),
        ),
        False,
    )
