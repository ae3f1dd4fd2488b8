from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any
from uuid import UUID, uuid4

import boto3
import httpx
from botocore.exceptions import ClientError

from app.core.settings import Settings

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


class StorageNotConfiguredError(RuntimeError):
    pass


class ObjectTooLargeError(ValueError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    url: str


def _s3_client(settings: Settings):
    kwargs: dict[str, Any] = {"service_name": "s3", "region_name": settings.s3_region}
    if settings.s3_endpoint_url:
        kwargs["endpoint_url"] = settings.s3_endpoint_url
    if settings.s3_access_key_id and settings.s3_secret_access_key:
        kwargs["aws_access_key_id"] = settings.s3_access_key_id
        kwargs["aws_secret_access_key"] = settings.s3_secret_access_key
    return boto3.client(**kwargs)


async def _fetch_bytes(url: str, *, timeout_seconds: float, max_bytes: int) -> tuple[bytes, str]:
    async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as client:
        async with client.stream("GET", url) as res:
            res.raise_for_status()
            content_type = (res.headers.get("content-type") or "application/octet-stream").split(";")[0].strip()
            chunks: list[bytes] = []
            total = 0
            async for chunk in res.aiter_bytes():
                total += len(chunk)
                if total > max_bytes:
                    raise ObjectTooLargeError(f"Object at {url} exceeds {max_bytes} bytes")
                chunks.append(chunk)
    return b"".join(chunks), content_type


def object_prefix(*, video_id: UUID | str, role: str) -> str:
    return f"videos/{video_id}/{role}"


class ObjectStore:
    """Durable storage for mirrored images. Keys are never reused."""

    def __init__(self, settings: Settings):
        if not settings.s3_bucket:
            raise StorageNotConfiguredError("S3 is not configured (missing S3_BUCKET)")
        self._settings = settings
        self._bucket = settings.s3_bucket
        self._s3 = _s3_client(settings)

    @property
    def bucket(self) -> str:
        return self._bucket

    def public_url(self, key: str) -> str:
        base = (self._settings.s3_public_base_url or "").strip().rstrip("/")
        if not base:
            base = f"https://{self._bucket}.s3.{self._settings.s3_region}.amazonaws.com"
        return f"{base}/{key}"

    def new_key(self, prefix: str, content_type: str | None = None) -> str:
        ext = _EXTENSIONS.get((content_type or "").lower(), "")
        return f"{prefix.rstrip('/')}/{uuid4().hex}{ext}"

    def owns_key(self, key: str, prefix: str) -> bool:
        return (key or "").startswith(prefix.rstrip("/") + "/")

    async def put_bytes(self, *, key: str, body: bytes, content_type: str) -> StoredObject:
        def _put():
            self._s3.put_object(Bucket=self._bucket, Key=key, Body=body, ContentType=content_type)

        await asyncio.to_thread(_put)
        return StoredObject(key=key, url=self.public_url(key))

    async def upload_from_url(self, url: str, *, prefix: str) -> StoredObject:
        body, content_type = await _fetch_bytes(
            url,
            timeout_seconds=float(self._settings.mirror_fetch_timeout_seconds),
            max_bytes=int(self._settings.mirror_max_bytes),
        )
        if not body:
            raise ValueError(f"Empty object at {url}")
        key = self.new_key(prefix, content_type)
        return await self.put_bytes(key=key, body=body, content_type=content_type)

    async def delete(self, key: str) -> bool:
        """Returns False if the object was already gone."""

        def _delete() -> bool:
            try:
                self._s3.delete_object(Bucket=self._bucket, Key=key)
            except ClientError as e:
                code = (e.response or {}).get("Error", {}).get("Code")
                if code in {"NoSuchKey", "404", "NotFound"}:
                    return False
                raise
            return True

        return await asyncio.to_thread(_delete)

    def presign_put(self, *, key: str, content_type: str) -> str:
        return self._s3.generate_presigned_url(
            ClientMethod="put_object",
            Params={"Bucket": self._bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=int(self._settings.s3_presign_expires_seconds),
        )


def get_object_store(settings: Settings) -> ObjectStore:
    return ObjectStore(settings)
