"""
Managed job sources

Operators keep a list of source pages in ``app_settings``. Stored
entries are normalized on every read (bad URLs dropped, duplicates by id
or URL collapsed). When nothing is enabled the built-in LinkedIn
Meghalaya searches are scraped instead.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional
from urllib.parse import urlparse, urlunparse

from jobfeed.schemas import ManagedSource, ManagedSourceCreate
from jobfeed.services.filters import normalize_whitespace
from jobfeed.services.run_state import SOURCES_KEY, RunStateStore
from jobfeed.services.schedule import parse_datetime, utcnow
from jobfeed.services.scrapers.base import SourceConfig, SourceSelectors

logger = logging.getLogger(__name__)

LINKEDIN_SELECTORS = SourceSelectors(
    job_container="ul.jobs-search__results-list li",
    title="h3.base-search-card__title",
    location=".job-search-card__location",
    company="h4.base-search-card__subtitle",
    link="a.base-card__full-link",
    description=".base-search-card__metadata, .job-search-card__snippet",
    published_at="time",
)

GENERIC_SELECTORS = SourceSelectors(
    job_container="article, li, .job, [class*='job'], [data-job-id], [data-testid*='job']",
    title="h1, h2, h3, [class*='title'], a[href*='job'], a[href*='career']",
    location="[class*='location'], [data-location], .location, [class*='city'], [class*='place']",
    company="[class*='company'], [data-company], .company, [class*='employer'], [class*='organization']",
    link="a[href]",
    description="[class*='description'], .description, [class*='summary'], [class*='snippet'], p",
    published_at="time, [datetime], [class*='date'], [class*='posted']",
)

DEFAULT_SOURCES = [
    SourceConfig(
        name=f"LinkedIn Meghalaya {place}",
        url=f"https://in.linkedin.com/jobs/search/?keywords={place}&location=Meghalaya",
        selectors=LINKEDIN_SELECTORS,
        location_scope="meghalaya_only",
    )
    for place in ("Shillong", "Tura", "Jowai")
]

SOURCE_TYPES = ("linkedin", "generic", "auto")
_LINKEDIN_HOST = re.compile(r"(^|\.)linkedin\.com$", re.IGNORECASE)


class SourceValidationError(ValueError):
    """Managed-source input was rejected."""


class SourceNotFoundError(SourceValidationError):
    pass


@dataclass
class SourceResolution:
    managed: List[ManagedSource]
    enabled: List[ManagedSource]
    sources: List[SourceConfig]
    using_fallback: bool


def normalize_http_url(url: Any) -> Optional[str]:
    """Return ``url`` without its fragment, or None if it is not http(s)."""
    raw = url.strip() if isinstance(url, str) else ""
    if not raw:
        return None
    try:
        parsed = urlparse(raw)
    except ValueError:
        return None
    if parsed.scheme.lower() not in ("http", "https") or not parsed.hostname:
        return None
    return urlunparse(parsed._replace(fragment=""))


def source_name_from_url(url: str) -> str:
    hostname = re.sub(r"^www\.", "", urlparse(url).hostname or "", flags=re.IGNORECASE)
    return hostname or "Job source"


def sanitize_type(value: Any) -> str:
    if isinstance(value, str) and value.strip().lower() in SOURCE_TYPES:
        return value.strip().lower()
    return "auto"


def _sanitize_enabled(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return True


def _normalize_record(value: Any, now: datetime) -> Optional[ManagedSource]:
    if not isinstance(value, dict):
        return None
    source_id = value.get("id")
    if not isinstance(source_id, str) or not source_id.strip():
        return None
    url = normalize_http_url(value.get("url"))
    if not url:
        return None

    name = normalize_whitespace(value.get("name")) if isinstance(value.get("name"), str) else ""
    return ManagedSource(
        id=source_id.strip(),
        name=name or source_name_from_url(url),
        url=url,
        type=sanitize_type(value.get("type")),
        enabled=_sanitize_enabled(value.get("enabled", True)),
        created_at=parse_datetime(value.get("createdAt")) or now,
        updated_at=parse_datetime(value.get("updatedAt")) or now,
    )


def normalize_managed_sources(raw: Any, now: Optional[datetime] = None) -> List[ManagedSource]:
    """Parse stored sources, keeping the first entry per id and per URL."""
    if not isinstance(raw, list):
        return []
    now = now or utcnow()
    seen_ids = set()
    seen_urls = set()
    sources = []
    for candidate in raw:
        source = _normalize_record(candidate, now)
        if source is None or source.id in seen_ids or source.url in seen_urls:
            continue
        seen_ids.add(source.id)
        seen_urls.add(source.url)
        sources.append(source)
    return sources


def to_source_config(source: ManagedSource) -> SourceConfig:
    effective_type = source.type
    if effective_type == "auto":
        hostname = urlparse(source.url).hostname or ""
        effective_type = "linkedin" if _LINKEDIN_HOST.search(hostname) else "generic"
    selectors = LINKEDIN_SELECTORS if effective_type == "linkedin" else GENERIC_SELECTORS
    return SourceConfig(
        name=source.name,
        url=source.url,
        selectors=selectors,
        location_scope="meghalaya_only",
    )


class SourceRegistry:
    def __init__(self, store: RunStateStore):
        self.store = store

    async def list_sources(self) -> List[ManagedSource]:
        return normalize_managed_sources(await self.store.get(SOURCES_KEY))

    async def resolve(self) -> SourceResolution:
        managed = await self.list_sources()
        enabled = [source for source in managed if source.enabled]
        using_fallback = not enabled
        return SourceResolution(
            managed=managed,
            enabled=enabled,
            sources=list(DEFAULT_SOURCES) if using_fallback else [to_source_config(s) for s in enabled],
            using_fallback=using_fallback,
        )

    async def _save(self, sources: List[ManagedSource]) -> None:
        await self.store.set(
            SOURCES_KEY,
            [source.model_dump(mode="json", by_alias=True) for source in sources],
        )

    async def add(self, payload: ManagedSourceCreate) -> ManagedSource:
        """Add a source, or update the one with the same id or URL and move it first."""
        url = normalize_http_url(payload.url)
        if not url:
            raise SourceValidationError("Source URL must be a valid http(s) URL.")

        current = await self.list_sources()
        now = utcnow()
        requested_id = (payload.id or "").strip()
        existing = next((s for s in current if requested_id and s.id == requested_id), None)
        if existing is None:
            existing = next((s for s in current if s.url == url), None)

        fields = {
            "name": normalize_whitespace(payload.name) or source_name_from_url(url),
            "url": url,
            "type": sanitize_type(payload.type),
            "enabled": payload.enabled,
            "updated_at": now,
        }
        if existing is not None:
            saved = existing.model_copy(update=fields)
            remaining = [s for s in current if s.id != existing.id]
        else:
            saved = ManagedSource(id=requested_id or str(uuid.uuid4()), created_at=now, **fields)
            remaining = current

        # Another entry may already hold the new URL; the saved one wins
        remaining = [s for s in remaining if s.url != url and s.id != saved.id]
        await self._save([saved, *remaining])
        logger.info(f"Saved managed source {saved.id} ({saved.url})")
        return saved

    async def set_enabled(self, source_id: str, enabled: bool) -> ManagedSource:
        source_id = (source_id or "").strip()
        if not source_id:
            raise SourceValidationError("Source id is required.")

        current = await self.list_sources()
        for index, source in enumerate(current):
            if source.id == source_id:
                current[index] = source.model_copy(update={"enabled": enabled, "updated_at": utcnow()})
                await self._save(current)
                return current[index]
        raise SourceNotFoundError("Source not found.")

    async def delete(self, source_id: str) -> None:
        source_id = (source_id or "").strip()
        if not source_id:
            raise SourceValidationError("Source id is required.")

        current = await self.list_sources()
        remaining = [source for source in current if source.id != source_id]
        if len(remaining) == len(current):
            raise SourceNotFoundError("Source not found.")
        await self._save(remaining)
        logger.info(f"Deleted managed source {source_id}")
