"""Object storage for generated images.

Provider image URLs are short-lived, so every generated image is copied into
durable storage before it is attached to a page.
"""

import asyncio
import ipaddress
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlparse

import httpx

from inkframe.common.config import InkframeSettings
from inkframe.common.exceptions import StorageError

logger = logging.getLogger(__name__)

MAX_OBJECT_KEY_LENGTH = 512


def build_object_key(story_id: str, page_number: int, timestamp_ms: int) -> str:
    return f"{story_id}/page-{page_number}-{timestamp_ms}.jpg"


def validate_object_key(key: str) -> str:
    key = key.strip().lstrip("/")
    if not key or len(key) > MAX_OBJECT_KEY_LENGTH:
        raise StorageError("Invalid object key")
    if any(part in ("", ".", "..") for part in key.split("/")):
        raise StorageError("Invalid object key")
    return key


def validate_source_url(url: str) -> str:
    """Only fetch public http(s) URLs; refuse localhost and literal private IPs."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise StorageError("Source image URL must be http(s)")
    host = parsed.hostname.lower()
    if host == "localhost" or host.endswith(".localhost"):
        raise StorageError("Source image URL points at a private address")
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return url
    if (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    ):
        raise StorageError("Source image URL points at a private address")
    return url


class ObjectStorage(ABC):
    """Copies remote images into durable storage."""

    def __init__(
        self,
        settings: InkframeSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    def _get_http_client(self) -> httpx.AsyncClient:
        """Lazy-init httpx.AsyncClient."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.storage_fetch_timeout,
                follow_redirects=False,
                transport=self._transport,
            )
        return self._http_client

    async def fetch_image(self, source_url: str) -> tuple[bytes, str]:
        """Download the source image, enforcing the configured size cap."""
        validate_source_url(source_url)
        max_bytes = self.settings.storage_max_image_bytes
        async with self._get_http_client().stream("GET", source_url) as resp:
            if resp.status_code >= 400:
                raise StorageError(f"Source image fetch failed: HTTP {resp.status_code}")
            declared = resp.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise StorageError("Source image exceeds the maximum allowed size")
            chunks: list[bytes] = []
            total = 0
            async for chunk in resp.aiter_bytes():
                total += len(chunk)
                if total > max_bytes:
                    raise StorageError("Source image exceeds the maximum allowed size")
                chunks.append(chunk)
            content_type = resp.headers.get("content-type", "image/jpeg").split(";")[0].strip()
        if total == 0:
            raise StorageError("Source image is empty")
        return b"".join(chunks), content_type

    async def store_remote_image(self, source_url: str, key: str) -> str:
        """Fetch ``source_url`` and store it under ``key``. Returns the durable URL."""
        key = validate_object_key(key)
        data, content_type = await self.fetch_image(source_url)
        url = await self.put_object(key, data, content_type)
        logger.info("Stored %d bytes at %s", len(data), key)
        return url

    @abstractmethod
    async def put_object(self, key: str, data: bytes, content_type: str) -> str:
        ...

    @abstractmethod
    async def delete_object(self, key: str) -> None:
        ...

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


class LocalObjectStorage(ObjectStorage):
    """Stores images on the local filesystem (development and tests)."""

    def __init__(
        self,
        settings: InkframeSettings,
        base_path: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(settings, transport=transport)
        self.base_path = Path(base_path or settings.storage_local_path).resolve()

    def _resolve_path(self, key: str) -> Path:
        path = (self.base_path / validate_object_key(key)).resolve()
        if self.base_path not in path.parents:
            raise StorageError("Invalid object key")
        return path

    def public_url(self, key: str) -> str:
        return f"{self.settings.storage_public_base_url.rstrip('/')}/{quote(key)}"

    async def put_object(self, key: str, data: bytes, content_type: str) -> str:
        path = self._resolve_path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        return self.public_url(key)

    async def delete_object(self, key: str) -> None:
        path = self._resolve_path(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)


class S3ObjectStorage(ObjectStorage):
    """Stores images in an S3 bucket via boto3."""

    def __init__(
        self,
        settings: InkframeSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        s3_client=None,
    ):
        super().__init__(settings, transport=transport)
        missing = [
            name for name in ("s3_bucket", "s3_region", "s3_access_key_id", "s3_secret_access_key")
            if not getattr(settings, name)
        ]
        if missing and s3_client is None:
            env_vars = ", ".join(f"INKFRAME_{name.upper()}" for name in missing)
            raise RuntimeError(f"Missing required S3 settings: {env_vars}")
        self.bucket = settings.s3_bucket
        self.region = settings.s3_region
        self._s3 = s3_client

    def _get_s3_client(self):
        if self._s3 is None:
            import boto3
            self._s3 = boto3.client(
                "s3",
                region_name=self.region,
                aws_access_key_id=self.settings.s3_access_key_id,
                aws_secret_access_key=self.settings.s3_secret_access_key,
            )
        return self._s3

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"

    async def put_object(self, key: str, data: bytes, content_type: str) -> str:
        client = self._get_s3_client()
        await asyncio.to_thread(
            client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        return self.public_url(key)

    async def delete_object(self, key: str) -> None:
        client = self._get_s3_client()
        await asyncio.to_thread(client.delete_object, Bucket=self.bucket, Key=key)


def create_object_storage(settings: InkframeSettings) -> ObjectStorage:
    if settings.storage_backend == "s3":
        return S3ObjectStorage(settings)
    if settings.storage_backend == "local":
        return LocalObjectStorage(settings)
    raise RuntimeError(f"Unknown storage backend: {settings.storage_backend!r}")
