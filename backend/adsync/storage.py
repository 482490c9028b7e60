"""
Object storage client for cached creative media.
Talks to a Supabase-compatible storage REST API over httpx.
"""

import logging
from typing import Optional

import httpx

from adsync.config import get_settings

logger = logging.getLogger(__name__)

PUBLIC_MARKER = "/storage/v1/object/public/"


class StorageError(Exception):
    pass


class ObjectStorage:
    def __init__(
        self,
        base_url: Optional[str] = None,
        service_key: Optional[str] = None,
        bucket: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.storage_url).rstrip("/")
        self.bucket = bucket or settings.storage_bucket
        key = service_key if service_key is not None else settings.storage_service_key
        self._client = httpx.AsyncClient(
            timeout=settings.media_timeout_seconds,
            headers={"Authorization": f"Bearer {key}", "apikey": key},
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def __aenter__(self) -> "ObjectStorage":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _object_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{path}"

    def public_url(self, path: str) -> str:
        return f"{self.base_url}{PUBLIC_MARKER}{self.bucket}/{path}"

    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        """Upload (overwriting) an object and return its public URL."""
        try:
            response = await self._client.post(
                self._object_url(path),
                content=content,
                headers={"Content-Type": content_type, "x-upsert": "true"},
            )
        except httpx.HTTPError as e:
            raise StorageError(f"Upload of {path} failed: {e}")
        if response.status_code >= 400:
            raise StorageError(f"Upload of {path} failed: HTTP {response.status_code} {response.text[:200]}")
        return self.public_url(path)

    async def delete(self, path: str) -> None:
        try:
            response = await self._client.delete(self._object_url(path))
        except httpx.HTTPError as e:
            raise StorageError(f"Delete of {path} failed: {e}")
        if response.status_code >= 400 and response.status_code != 404:
            raise StorageError(f"Delete of {path} failed: HTTP {response.status_code}")
