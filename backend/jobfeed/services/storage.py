"""
Object storage client (Supabase Storage REST API)

Only the two calls the pipeline needs: upload an object without
overwriting, and build its public URL. An "already exists" response is
surfaced as ``StorageError.already_exists`` so callers can treat it as
success.
"""

import logging
import re
from typing import Optional, Protocol
from urllib.parse import quote

import httpx

from jobfeed.config import get_settings

logger = logging.getLogger(__name__)

_ALREADY_EXISTS_PATTERN = re.compile(r"already exists|duplicate", re.IGNORECASE)


class StorageError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def already_exists(self) -> bool:
        return self.status_code == 409 or bool(_ALREADY_EXISTS_PATTERN.search(str(self)))


class ObjectStorage(Protocol):
    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        ...

    def public_url(self, bucket: str, path: str) -> str:
        ...


class SupabaseStorage:
    def __init__(
        self,
        base_url: str,
        service_key: str,
        *,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {service_key}",
            "apikey": service_key,
        }
        self.timeout_seconds = timeout_seconds
        self._client = client

    def _object_path(self, bucket: str, path: str) -> str:
        return f"{quote(bucket)}/{quote(path)}"

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        url = f"{self.base_url}/storage/v1/object/{self._object_path(bucket, path)}"
        headers = {
            **self.headers,
            "content-type": content_type,
            "cache-control": "max-age=3600",
            "x-upsert": "false",
        }

        try:
            if self._client is not None:
                response = await self._client.post(url, content=data, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, content=data, headers=headers)
        except httpx.HTTPError as exc:
            raise StorageError(f"Upload failed: {exc}") from exc

        if response.status_code >= 400:
            raise StorageError(_error_message(response), status_code=response.status_code)

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self._object_path(bucket, path)}"


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        for key in ("message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return f"HTTP {response.status_code}"


def get_storage() -> Optional[SupabaseStorage]:
    """Storage client from settings, or None when storage is not configured."""
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_service_key:
        logger.info("Object storage not configured; PDF mirroring disabled")
        return None
    return SupabaseStorage(
        settings.supabase_url,
        settings.supabase_service_key,
        timeout_seconds=settings.storage_timeout_seconds,
    )
