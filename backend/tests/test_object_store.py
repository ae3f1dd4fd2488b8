from __future__ import annotations

import pytest
from botocore.exceptions import ClientError

import app.storage.s3 as s3
from app.core.settings import Settings
from app.storage.s3 import ObjectStore, StorageNotConfiguredError, object_prefix


class FakeS3:
    def __init__(self) -> None:
        self.objects: dict[str, dict] = {}

    def put_object(self, *, Bucket, Key, Body, ContentType):  # noqa: N803
        self.objects[Key] = {"bucket": Bucket, "body": Body, "content_type": ContentType}

    def delete_object(self, *, Bucket, Key):  # noqa: N803
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "DeleteObject")
        del self.objects[Key]

    def generate_presigned_url(self, *, ClientMethod, Params, ExpiresIn):  # noqa: N803
        return f"https://s3.example.test/{Params['Key']}?method={ClientMethod}&expires={ExpiresIn}"


@pytest.fixture
def fake_s3(monkeypatch) -> FakeS3:
    fake = FakeS3()
    monkeypatch.setattr(s3, "_s3_client", lambda settings: fake)
    return fake


def _settings(**env) -> Settings:
    base = {"S3_BUCKET": "media", "S3_REGION": "eu-west-1"}
    base.update(env)
    return Settings(**base)


def test_store_requires_bucket(fake_s3) -> None:
    settings = _settings()
    settings.s3_bucket = None
    with pytest.raises(StorageNotConfiguredError):
        ObjectStore(settings)


def test_public_url_default_and_custom(fake_s3) -> None:
    settings = _settings()
    settings.s3_public_base_url = None
    assert ObjectStore(settings).public_url("a/b.jpg") == "https://media.s3.eu-west-1.amazonaws.com/a/b.jpg"

    store = ObjectStore(_settings(S3_PUBLIC_BASE_URL="https://cdn.example.test/"))
    assert store.public_url("a/b.jpg") == "https://cdn.example.test/a/b.jpg"


def test_new_keys_are_fresh_and_scoped(fake_s3) -> None:
    store = ObjectStore(_settings())
    prefix = object_prefix(video_id="v1", role="thumbnail")

    k1 = store.new_key(prefix, "image/jpeg")
    k2 = store.new_key(prefix, "image/jpeg")

    assert k1 != k2
    assert k1.startswith("videos/v1/thumbnail/")
    assert k1.endswith(".jpg")
    assert store.owns_key(k1, prefix)
    assert not store.owns_key("videos/v2/thumbnail/x.jpg", prefix)


@pytest.mark.asyncio
async def test_upload_from_url_puts_fetched_bytes(fake_s3, monkeypatch) -> None:
    async def _fake_fetch(url: str, *, timeout_seconds: float, max_bytes: int):
        assert url == "https://image.mux.com/pb_1/thumbnail.jpg"
        return b"jpeg-bytes", "image/jpeg"

    monkeypatch.setattr(s3, "_fetch_bytes", _fake_fetch)
    store = ObjectStore(_settings(S3_PUBLIC_BASE_URL="https://cdn.example.test"))

    stored = await store.upload_from_url("https://image.mux.com/pb_1/thumbnail.jpg", prefix="videos/v1/thumbnail")

    assert stored.key.startswith("videos/v1/thumbnail/")
    assert stored.url == f"https://cdn.example.test/{stored.key}"
    assert fake_s3.objects[stored.key]["body"] == b"jpeg-bytes"
    assert fake_s3.objects[stored.key]["content_type"] == "image/jpeg"


@pytest.mark.asyncio
async def test_delete_tolerates_missing_objects(fake_s3) -> None:
    store = ObjectStore(_settings())
    await store.put_bytes(key="videos/v1/thumbnail/a.jpg", body=b"x", content_type="image/jpeg")

    assert await store.delete("videos/v1/thumbnail/a.jpg") is True
    assert await store.delete("videos/v1/thumbnail/a.jpg") is False


def test_presign_put(fake_s3) -> None:
    store = ObjectStore(_settings(S3_PRESIGN_EXPIRES_SECONDS="120"))
    url = store.presign_put(key="videos/v1/thumbnail/a.png", content_type="image/png")
    assert url == "https://s3.example.test/videos/v1/thumbnail/a.png?method=put_object&expires=120"
