"""
Listing filters - location scope and publish-date lookback

Dates come from free text on listing pages, so parsing is lenient:
relative phrases ("today", "3 days ago", "5 hours ago"), dd/mm/yyyy,
yyyy-mm-dd and ISO-8601. Listings whose date cannot be parsed are
dropped by the lookback filter.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

MEGHALAYA_LOCATION_KEYWORDS = (
    "meghalaya",
    "shillong",
    "tura",
    "jowai",
    "east khasi hills",
)

# Checked in order; the most specific place wins
_INFERRED_LOCATIONS = (
    ("east khasi hills", "East Khasi Hills, Meghalaya"),
    ("shillong", "Shillong, Meghalaya"),
    ("tura", "Tura, Meghalaya"),
    ("jowai", "Jowai, Meghalaya"),
    ("meghalaya", "Meghalaya"),
)

_DAYS_AGO = re.compile(r"(\d{1,2})\s*days?\s*ago")
_HOURS_AGO = re.compile(r"(\d{1,2})\s*(?:hours?|hrs?)\s*ago")
_DAY_MONTH_YEAR = re.compile(r"\b(\d{1,2})[/.-](\d{1,2})[/.-](\d{4})\b")
_YEAR_MONTH_DAY = re.compile(r"\b(\d{4})[/.-](\d{1,2})[/.-](\d{1,2})\b")
_JOB_WORDS = re.compile(r"job|vacanc|hiring|opening|career|apply")


def normalize_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def mentions_meghalaya(text: str) -> bool:
    normalized = (text or "").strip().lower()
    return bool(normalized) and any(keyword in normalized for keyword in MEGHALAYA_LOCATION_KEYWORDS)


def looks_like_job_listing(text: str) -> bool:
    return bool(_JOB_WORDS.search((text or "").lower()))


def infer_location(text: str) -> str:
    normalized = (text or "").lower()
    for keyword, location in _INFERRED_LOCATIONS:
        if keyword in normalized:
            return location
    return ""


def location_in_scope(location: str, scope: str) -> bool:
    if scope == "meghalaya_only":
        return mentions_meghalaya(location)
    return True


def parse_relative_date(text: str, now: datetime) -> Optional[datetime]:
    normalized = (text or "").strip().lower()
    if not normalized:
        return None
    if "today" in normalized:
        return now
    if "yesterday" in normalized:
        return now - timedelta(days=1)

    match = _DAYS_AGO.search(normalized)
    if match:
        return now - timedelta(days=int(match.group(1)))
    match = _HOURS_AGO.search(normalized)
    if match:
        return now - timedelta(hours=int(match.group(1)))
    return None


def _calendar_date(year: int, month: int, day: int) -> Optional[datetime]:
    if year < 2000:
        return None
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None


def parse_absolute_date(text: str) -> Optional[datetime]:
    text = (text or "").strip()
    if not text:
        return None

    match = _DAY_MONTH_YEAR.search(text)
    if match:
        parsed = _calendar_date(int(match.group(3)), int(match.group(2)), int(match.group(1)))
        if parsed:
            return parsed

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is not None:
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    match = _YEAR_MONTH_DAY.search(text)
    if match:
        return _calendar_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    return None


def parse_published_date(date_text: str, context_text: str, now: datetime) -> Optional[datetime]:
    """Try the dedicated date text first, then the surrounding listing text."""
    return (
        parse_relative_date(date_text, now)
        or parse_absolute_date(date_text)
        or parse_relative_date(context_text, now)
        or parse_absolute_date(context_text)
    )


def within_lookback(published: datetime, lookback_days: int, now: datetime) -> bool:
    age = now - published
    if age < -timedelta(days=1):
        return False
    return age <= timedelta(days=lookback_days)
