"""
Duplicate-Safe Bulk Writer

Turns scraped rows into stored job postings without creating
duplicates. Rows are keyed by their natural key, ``source_url``.

Pipeline:
    1. Normalize rows and collapse duplicates within the batch (last wins)
    2. Split into fixed-size chunks, each in its own transaction
    3. Per chunk: look up existing rows, apply the duplicate policy,
       upsert, then reconcile which URLs were actually written

Duplicate policy:
    - skip: rows whose source_url already exists are not written
    - update: existing rows are overwritten, but a posting that was
      deactivated stays "inactive" even if the scrape says "active"

A failure in one chunk does not roll back earlier chunks; upserts are
keyed on source_url so a rerun of the same batch is idempotent.
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, List, Literal, Mapping, Optional, Set, Union
from urllib.parse import urlparse

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from jobfeed.config import get_settings
from jobfeed.models import JobPosting
from jobfeed.schemas import JobPostingRow
from jobfeed.services.retry import linear_backoff, retry_async

logger = logging.getLogger(__name__)

DuplicateMode = Literal["skip", "update"]

PLACEHOLDER_COMPANIES = {"unknown", "n/a", "na", "not available"}

# Columns that may be missing on databases that predate their migration
OPTIONAL_COLUMNS = ("status",)
_OPTIONAL_COLUMN_PATTERN = re.compile(
    r"\b(" + "|".join(OPTIONAL_COLUMNS) + r")\b", re.IGNORECASE
)


@dataclass
class PersistenceResult:
    """Counts for one save call; inserted + updated + skipped == attempted."""

    attempted_count: int = 0
    inserted_count: int = 0
    updated_count: int = 0
    skipped_duplicate_count: int = 0

    def merge(self, other: "PersistenceResult") -> "PersistenceResult":
        return PersistenceResult(
            attempted_count=self.attempted_count + other.attempted_count,
            inserted_count=self.inserted_count + other.inserted_count,
            updated_count=self.updated_count + other.updated_count,
            skipped_duplicate_count=self.skipped_duplicate_count + other.skipped_duplicate_count,
        )

    def as_dict(self) -> dict:
        return {
            "attemptedCount": self.attempted_count,
            "insertedCount": self.inserted_count,
            "updatedCount": self.updated_count,
            "skippedDuplicateCount": self.skipped_duplicate_count,
        }


RowInput = Union[JobPostingRow, Mapping[str, object]]


def company_fallback(source_url: str) -> str:
    """Deterministic company name derived from the posting URL's host."""
    normalized = source_url.strip()
    if not normalized:
        return "Source"
    if normalized.startswith("manual://"):
        return "Manual source"

    try:
        hostname = (urlparse(normalized).hostname or "").strip()
    except ValueError:
        return "Source"
    hostname = re.sub(r"^www\.", "", hostname, flags=re.IGNORECASE)
    if not hostname:
        return "Source"
    if "linkedin." in hostname.lower():
        return "LinkedIn"
    return hostname


def normalize_company(company: str, source_url: str) -> str:
    normalized = (company or "").strip()
    if normalized and normalized.lower() not in PLACEHOLDER_COMPANIES:
        return normalized
    return company_fallback(source_url)


def _as_row(row: RowInput) -> JobPostingRow:
    if isinstance(row, JobPostingRow):
        return row
    return JobPostingRow.model_validate(dict(row))


def normalize_rows(rows: Iterable[RowInput]) -> List[dict]:
    """
    Normalize rows and collapse them by source_url, last one wins.

    Rows with an empty source_url are dropped. The returned dicts use
    column names and keep the position of the first occurrence.
    """
    deduped: Dict[str, dict] = {}
    for raw in rows:
        row = _as_row(raw)
        source_url = (row.source_url or "").strip()
        if not source_url:
            continue

        pdf_source_url = (row.pdf_source_url or "").strip() or None
        deduped[source_url] = {
            "title": (row.title or "").strip() or "Job opening",
            "company": normalize_company(row.company, source_url),
            "location": (row.location or "").strip() or "Unknown",
            "description": (row.description or "").strip(),
            "status": "inactive" if (row.status or "").strip().lower() == "inactive" else "active",
            "source_url": source_url,
            "pdf_source_url": pdf_source_url,
            "pdf_cached_url": (row.pdf_cached_url or "").strip() or None,
        }

    return list(deduped.values())


def chunked(items: List[dict], size: int) -> List[List[dict]]:
    if size <= 0 or len(items) <= size:
        return [items]
    return [items[index:index + size] for index in range(0, len(items), size)]


def mentions_optional_column(error: BaseException) -> bool:
    # DBAPI errors embed the SQL text; match on the driver message only
    message = str(getattr(error, "orig", None) or error)
    return bool(_OPTIONAL_COLUMN_PATTERN.search(message))


def _strip_optional_columns(rows: List[dict]) -> List[dict]:
    return [
        {key: value for key, value in row.items() if key not in OPTIONAL_COLUMNS}
        for row in rows
    ]


def _insert_for(dialect_name: str):
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


class JobWriter:
    """
    Chunked, retried, duplicate-aware writer for job postings.

    Each logical store operation (existence lookup, upsert) is retried
    independently with linear backoff. Once retries are exhausted the
    error propagates as ``RetryExhaustedError``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        batch_size: int = 100,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 0.3,
        sleep=asyncio.sleep,
    ):
        self._session_factory = session_factory
        self.batch_size = max(1, batch_size)
        self.retry_attempts = max(1, retry_attempts)
        self._backoff = linear_backoff(retry_delay_seconds)
        self._sleep = sleep

    async def save(
        self,
        rows: Iterable[RowInput],
        on_duplicate: DuplicateMode = "skip",
    ) -> PersistenceResult:
        normalized = normalize_rows(rows)
        if not normalized:
            return PersistenceResult()

        mode: DuplicateMode = "update" if on_duplicate == "update" else "skip"
        result = PersistenceResult(attempted_count=len(normalized))

        for batch in chunked(normalized, self.batch_size):
            source_urls = [row["source_url"] for row in batch]

            existing_status = (
                await self._retry(
                    "select-existing-source-urls",
                    lambda: self._select_existing(source_urls),
                )
            ).unwrap()

            if mode == "update":
                rows_to_write = [
                    {**row, "status": "inactive"}
                    if existing_status.get(row["source_url"]) == "inactive"
                    else row
                    for row in batch
                ]
            else:
                rows_to_write = [row for row in batch if row["source_url"] not in existing_status]

            result.skipped_duplicate_count += len(batch) - len(rows_to_write)
            if not rows_to_write:
                continue

            written = (
                await self._retry(
                    "upsert-jobs",
                    lambda: self._upsert(rows_to_write, mode),
                )
            ).unwrap()

            for row in rows_to_write:
                source_url = row["source_url"]
                if source_url not in written:
                    result.skipped_duplicate_count += 1
                elif source_url in existing_status:
                    result.updated_count += 1
                else:
                    result.inserted_count += 1

        logger.info(
            f"Saved jobs mode={mode}: attempted={result.attempted_count} "
            f"inserted={result.inserted_count} updated={result.updated_count} "
            f"skipped={result.skipped_duplicate_count}"
        )
        return result

    async def _retry(self, label: str, operation):
        return await retry_async(
            operation,
            label=label,
            attempts=self.retry_attempts,
            backoff=self._backoff,
            retry_on=(SQLAlchemyError, OSError),
            sleep=self._sleep,
        )

    async def _select_existing(self, source_urls: List[str]) -> Dict[str, Optional[str]]:
        """Map existing source_url -> status (None when the column is absent)."""
        try:
            rows = await self._fetch_existing(source_urls, with_status=True)
        except SQLAlchemyError as exc:
            if not mentions_optional_column(exc):
                raise
            logger.warning(f"Existing-row lookup without optional columns: {exc}")
            rows = await self._fetch_existing(source_urls, with_status=False)

        existing: Dict[str, Optional[str]] = {}
        for row in rows:
            source_url = (row[0] or "").strip()
            if not source_url:
                continue
            status = str(row[1] or "").strip().lower() if len(row) > 1 else ""
            existing[source_url] = "inactive" if status == "inactive" else "active"
        return existing

    async def _fetch_existing(self, source_urls: List[str], with_status: bool):
        columns = [JobPosting.source_url]
        if with_status:
            columns.append(JobPosting.status)
        async with self._session_factory() as session:
            result = await session.execute(
                select(*columns).where(JobPosting.source_url.in_(source_urls))
            )
            return result.all()

    async def _upsert(self, rows: List[dict], mode: DuplicateMode) -> Set[str]:
        """Upsert rows on source_url; returns the URLs actually written."""
        try:
            return await self._execute_upsert(rows, mode)
        except SQLAlchemyError as exc:
            if not mentions_optional_column(exc):
                raise
            logger.warning(f"Upsert retried without optional columns: {exc}")
            return await self._execute_upsert(_strip_optional_columns(rows), mode)

    async def _execute_upsert(self, rows: List[dict], mode: DuplicateMode) -> Set[str]:
        table = JobPosting.__table__
        payload = [{"id": str(uuid.uuid4()), **row} for row in rows]

        async with self._session_factory() as session:
            async with session.begin():
                insert = _insert_for(session.get_bind().dialect.name)
                stmt = insert(table).values(payload)
                if mode == "skip":
                    stmt = stmt.on_conflict_do_nothing(index_elements=["source_url"])
                else:
                    updates = {
                        key: stmt.excluded[key]
                        for key in payload[0]
                        if key not in ("id", "source_url", "pdf_cached_url")
                    }
                    updates["pdf_cached_url"] = func.coalesce(
                        stmt.excluded.pdf_cached_url, table.c.pdf_cached_url
                    )
                    updates["updated_at"] = func.now()
                    stmt = stmt.on_conflict_do_update(index_elements=["source_url"], set_=updates)

                result = await session.execute(stmt.returning(table.c.source_url))
                return {row[0] for row in result.all()}


def get_job_writer(session_factory: Optional[async_sessionmaker] = None) -> JobWriter:
    """Build a writer from settings."""
    from jobfeed.database import get_session_factory

    settings = get_settings()
    return JobWriter(
        session_factory or get_session_factory(),
        batch_size=settings.jobs_save_batch_size,
        retry_attempts=settings.jobs_save_retry_attempts,
        retry_delay_seconds=settings.jobs_save_retry_delay_seconds,
    )
