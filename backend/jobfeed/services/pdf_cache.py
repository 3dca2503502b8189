"""
Document Mirror - caches remote job PDFs in object storage

``PdfCache.cache(url)`` downloads a PDF under time and size bounds,
checks it is plausibly a PDF, and uploads it to a content-derived path:

    {prefix}/{host}/{stem}-{sha256(url)[:16]}.pdf

The same URL always maps to the same object, so an "already exists"
upload response counts as success. Every failure is logged and reduced
to ``None``; callers fall back to linking the original URL. There are
no retries here, a failed attempt is final for this run.
"""

import hashlib
import logging
import re
from typing import Optional
from urllib.parse import urlparse

import httpx
from prometheus_client import Counter

from jobfeed.config import get_settings
from jobfeed.services.fetch import download_bounded
from jobfeed.services.storage import ObjectStorage, StorageError, get_storage

logger = logging.getLogger(__name__)

PDF_CACHE_RESULTS = Counter(
    "jobs_pdf_cache_total",
    "PDF cache attempts by outcome",
    ["outcome"],  # cached, skipped, failed
)

PDF_MAGIC = b"%PDF-"
PDF_ACCEPT = "application/pdf,application/octet-stream;q=0.9,*/*;q=0.8"


def sanitize_path_segment(value: str) -> str:
    value = value.lower()
    value = re.sub(r"[^a-z0-9._-]+", "-", value)
    value = re.sub(r"-+", "-", value)
    return value.strip("-")[:80]


def build_storage_path(pdf_url: str, prefix: str = "jobs") -> str:
    parsed = urlparse(pdf_url)
    host = sanitize_path_segment(re.sub(r"^www\.", "", parsed.hostname or "", flags=re.IGNORECASE)) or "source"
    segments = [segment for segment in parsed.path.split("/") if segment]
    basename = segments[-1] if segments else "document.pdf"
    raw_stem = re.sub(r"\.pdf$", "", basename, flags=re.IGNORECASE) or "document"
    stem = sanitize_path_segment(raw_stem) or "document"
    digest = hashlib.sha256(pdf_url.encode("utf-8")).hexdigest()[:16]
    safe_prefix = sanitize_path_segment(prefix or "") or "jobs"
    return f"{safe_prefix}/{host}/{stem}-{digest}.pdf"


def looks_like_pdf(content: bytes, content_type: str) -> bool:
    declared = (content_type or "").split(";")[0].strip().lower()
    return declared == "application/pdf" or content.lstrip()[:5] == PDF_MAGIC


class PdfCache:
    def __init__(
        self,
        storage: Optional[ObjectStorage],
        *,
        enabled: bool = True,
        bucket: str = "jobs-pdfs",
        prefix: str = "jobs",
        max_bytes: int = 20 * 1024 * 1024,
        timeout_seconds: float = 25.0,
        require_pdf_path: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.storage = storage
        self.enabled = enabled and storage is not None
        self.bucket = bucket
        self.prefix = prefix
        self.max_bytes = max_bytes
        self.timeout_seconds = timeout_seconds
        self.require_pdf_path = require_pdf_path
        self._client = client

    async def cache(self, pdf_url: str) -> Optional[str]:
        """Mirror ``pdf_url``; returns the public URL or None."""
        trimmed = (pdf_url or "").strip()
        if not trimmed or not self.enabled:
            PDF_CACHE_RESULTS.labels(outcome="skipped").inc()
            return None

        try:
            parsed = urlparse(trimmed)
        except ValueError:
            PDF_CACHE_RESULTS.labels(outcome="skipped").inc()
            return None
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            PDF_CACHE_RESULTS.labels(outcome="skipped").inc()
            return None
        if self.require_pdf_path and ".pdf" not in parsed.path.lower():
            PDF_CACHE_RESULTS.labels(outcome="skipped").inc()
            return None

        storage_path = build_storage_path(trimmed, self.prefix)
        try:
            body = await download_bounded(
                trimmed,
                max_bytes=self.max_bytes,
                timeout_seconds=self.timeout_seconds,
                headers={"accept": PDF_ACCEPT},
                client=self._client,
            )
            if not looks_like_pdf(body.content, body.content_type):
                raise ValueError(f"Not a PDF (content-type {body.content_type or 'missing'})")

            try:
                await self.storage.upload(self.bucket, storage_path, body.content, "application/pdf")
            except StorageError as exc:
                if not exc.already_exists:
                    raise

            public_url = (self.storage.public_url(self.bucket, storage_path) or "").strip()
            if not public_url:
                PDF_CACHE_RESULTS.labels(outcome="failed").inc()
                return None
        except Exception as exc:
            PDF_CACHE_RESULTS.labels(outcome="failed").inc()
            logger.warning(
                "pdf_cache_failed url=%s path=%s error=%s",
                trimmed,
                storage_path,
                exc,
            )
            return None

        PDF_CACHE_RESULTS.labels(outcome="cached").inc()
        return public_url


def get_pdf_cache() -> PdfCache:
    settings = get_settings()
    return PdfCache(
        get_storage(),
        enabled=settings.pdf_cache_enabled,
        bucket=settings.pdf_storage_bucket,
        prefix=settings.pdf_storage_prefix,
        max_bytes=settings.pdf_max_bytes,
        timeout_seconds=settings.pdf_download_timeout_seconds,
    )
