"""
Bounded HTTP fetch helpers

Downloads are capped both by wall-clock time and by byte count. The
byte ceiling is checked against ``Content-Length`` first (fast fail)
and then against the bytes actually streamed, so a missing or lying
header cannot push the download past the limit.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

SCRAPER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)


class DownloadError(Exception):
    """Raised when a remote document cannot be fetched within bounds."""


@dataclass
class DownloadedBody:
    url: str
    content: bytes
    content_type: str


def _declared_length(response: httpx.Response) -> Optional[int]:
    raw = response.headers.get("content-length")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


async def _stream_body(
    client: httpx.AsyncClient,
    url: str,
    max_bytes: int,
    headers: Dict[str, str],
) -> DownloadedBody:
    async with client.stream("GET", url, headers=headers) as response:
        if response.status_code >= 400:
            raise DownloadError(f"Failed to download (HTTP {response.status_code})")

        declared = _declared_length(response)
        if declared is not None and declared > max_bytes:
            raise DownloadError("Document is larger than configured max bytes.")

        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) > max_bytes:
                raise DownloadError("Document is larger than configured max bytes.")

        if not buffer:
            raise DownloadError("Downloaded document is empty.")

        return DownloadedBody(
            url=str(response.url),
            content=bytes(buffer),
            content_type=response.headers.get("content-type", ""),
        )


async def download_bounded(
    url: str,
    *,
    max_bytes: int,
    timeout_seconds: float,
    headers: Optional[Dict[str, str]] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> DownloadedBody:
    """Download ``url`` or raise ``DownloadError``."""
    request_headers = {"user-agent": SCRAPER_USER_AGENT, **(headers or {})}

    async def _run() -> DownloadedBody:
        if client is not None:
            return await _stream_body(client, url, max_bytes, request_headers)
        async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as temp_client:
            return await _stream_body(temp_client, url, max_bytes, request_headers)

    try:
        return await asyncio.wait_for(_run(), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise DownloadError(f"Download timed out after {timeout_seconds}s") from exc
    except httpx.HTTPError as exc:
        raise DownloadError(f"Download failed: {exc}") from exc


async def fetch_text(
    url: str,
    *,
    timeout_seconds: float,
    headers: Optional[Dict[str, str]] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """GET a page and return its text, raising ``httpx.HTTPError`` on failure."""
    request_headers = {"user-agent": SCRAPER_USER_AGENT, **(headers or {})}

    if client is not None:
        response = await client.get(url, headers=request_headers, timeout=timeout_seconds)
    else:
        async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as temp_client:
            response = await temp_client.get(url, headers=request_headers)
    response.raise_for_status()
    return response.text
