"""
Tests for the PDF mirror

Tests cover:
- Deterministic storage paths
- Skips: disabled cache, non-http schemes, non-PDF paths
- Size ceiling enforced from Content-Length and from streamed bytes
- PDF validation by content type or magic bytes
- "Already exists" uploads count as success
"""

import hashlib

import httpx
import pytest
from unittest.mock import AsyncMock

from jobfeed.services.pdf_cache import PdfCache, build_storage_path, looks_like_pdf
from jobfeed.services.storage import StorageError

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\n%%EOF"
PDF_URL = "https://www.megipr.gov.in/notices/Advt No. 12.PDF"


class FakeStorage:
    def __init__(self, upload_error=None, public_base="https://cdn.example.com"):
        self.upload = AsyncMock(side_effect=upload_error)
        self.public_base = public_base

    def public_url(self, bucket, path):
        if not self.public_base:
            return ""
        return f"{self.public_base}/{bucket}/{path}"


class TrackingStream(httpx.AsyncByteStream):
    def __init__(self, chunks):
        self.chunks = chunks
        self.consumed = False

    async def __aiter__(self):
        self.consumed = True
        for chunk in self.chunks:
            yield chunk


def make_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def pdf_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "application/pdf"}, content=PDF_BYTES)


class TestBuildStoragePath:
    def test_path_is_prefix_host_stem_and_digest(self):
        digest = hashlib.sha256(PDF_URL.encode("utf-8")).hexdigest()[:16]
        assert build_storage_path(PDF_URL, "jobs") == f"jobs/megipr.gov.in/advt-no.-12-{digest}.pdf"

    def test_same_url_maps_to_same_path(self):
        assert build_storage_path(PDF_URL) == build_storage_path(PDF_URL)

    def test_different_urls_map_to_different_paths(self):
        assert build_storage_path("https://a.example/x.pdf") != build_storage_path("https://a.example/x.pdf?v=2")

    def test_empty_path_uses_document_stem(self):
        path = build_storage_path("https://example.com/", "")
        assert path.startswith("jobs/example.com/document-")


class TestLooksLikePdf:
    def test_declared_content_type(self):
        assert looks_like_pdf(b"anything", "application/pdf; charset=binary")

    def test_magic_bytes_with_generic_type(self):
        assert looks_like_pdf(b"  %PDF-1.7 ...", "application/octet-stream")

    def test_html_is_rejected(self):
        assert not looks_like_pdf(b"<html></html>", "text/html")


class TestPdfCacheSkips:
    @pytest.mark.asyncio
    async def test_disabled_without_storage(self):
        cache = PdfCache(None)
        assert not cache.enabled
        assert await cache.cache(PDF_URL) is None

    @pytest.mark.asyncio
    async def test_disabled_by_flag(self):
        storage = FakeStorage()
        cache = PdfCache(storage, enabled=False)

        assert await cache.cache(PDF_URL) is None
        storage.upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_http_scheme(self):
        storage = FakeStorage()
        cache = PdfCache(storage)

        assert await cache.cache("ftp://example.com/notice.pdf") is None
        storage.upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_path_without_pdf_suffix(self):
        storage = FakeStorage()
        cache = PdfCache(storage)

        assert await cache.cache("https://example.com/notice") is None
        storage.upload.assert_not_called()


class TestPdfCacheDownload:
    @pytest.mark.asyncio
    async def test_caches_pdf_and_returns_public_url(self):
        storage = FakeStorage()
        async with make_client(pdf_response) as client:
            cache = PdfCache(storage, bucket="jobs-pdfs", prefix="jobs", client=client)
            result = await cache.cache(PDF_URL)

        path = build_storage_path(PDF_URL, "jobs")
        assert result == f"https://cdn.example.com/jobs-pdfs/{path}"
        storage.upload.assert_awaited_once_with("jobs-pdfs", path, PDF_BYTES, "application/pdf")

    @pytest.mark.asyncio
    async def test_declared_length_over_ceiling_fails_without_reading_body(self):
        stream = TrackingStream([PDF_BYTES])

        def handler(request):
            return httpx.Response(
                200,
                headers={"content-type": "application/pdf", "content-length": "5000"},
                stream=stream,
            )

        storage = FakeStorage()
        async with make_client(handler) as client:
            cache = PdfCache(storage, max_bytes=1000, client=client)
            result = await cache.cache(PDF_URL)

        assert result is None
        assert not stream.consumed
        storage.upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_streamed_bytes_over_ceiling_fail(self):
        def handler(request):
            return httpx.Response(
                200,
                headers={"content-type": "application/pdf"},
                stream=TrackingStream([PDF_BYTES, b"0" * 2000]),
            )

        storage = FakeStorage()
        async with make_client(handler) as client:
            cache = PdfCache(storage, max_bytes=1000, client=client)
            assert await cache.cache(PDF_URL) is None

        storage.upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_pdf_body_is_rejected(self):
        def handler(request):
            return httpx.Response(200, headers={"content-type": "text/html"}, content=b"<html>login</html>")

        storage = FakeStorage()
        async with make_client(handler) as client:
            cache = PdfCache(storage, client=client)
            assert await cache.cache(PDF_URL) is None

        storage.upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_http_error_status_fails(self):
        def handler(request):
            return httpx.Response(404, content=b"missing")

        async with make_client(handler) as client:
            cache = PdfCache(FakeStorage(), client=client)
            assert await cache.cache(PDF_URL) is None

    @pytest.mark.asyncio
    async def test_already_exists_counts_as_success(self):
        storage = FakeStorage(upload_error=StorageError("The resource already exists", status_code=400))
        async with make_client(pdf_response) as client:
            cache = PdfCache(storage, client=client)
            result = await cache.cache(PDF_URL)

        assert result is not None
        assert result.endswith(build_storage_path(PDF_URL, "jobs"))

    @pytest.mark.asyncio
    async def test_other_upload_errors_fail(self):
        storage = FakeStorage(upload_error=StorageError("Bucket not found", status_code=404))
        async with make_client(pdf_response) as client:
            cache = PdfCache(storage, client=client)
            assert await cache.cache(PDF_URL) is None

    @pytest.mark.asyncio
    async def test_empty_public_url_fails(self):
        storage = FakeStorage(public_base="")
        async with make_client(pdf_response) as client:
            cache = PdfCache(storage, client=client)
            assert await cache.cache(PDF_URL) is None
