from __future__ import annotations

from uuid import uuid4

import pytest

import app.workflows.steps as steps
from app.storage.mirror import VideoMissingError
from app.workflows.errors import VideoNotFoundError


class _FakeStore:
    def __init__(self, keys: set[str]) -> None:
        self.objects = set(keys)

    async def delete(self, key: str) -> bool:
        found = key in self.objects
        self.objects.discard(key)
        return found


class _FakeMirror:
    def __init__(self, *, missing: bool) -> None:
        self.missing = missing
        self.replaced: list[str] = []

    async def replace_thumbnail(self, *, video_id, owner_id, key):
        if self.missing:
            raise VideoMissingError(str(video_id))
        self.replaced.append(key)


def _install(monkeypatch, *, mirror: _FakeMirror, store: _FakeStore) -> None:
    monkeypatch.setattr(steps, "get_asset_mirror", lambda settings: mirror)
    monkeypatch.setattr(steps, "get_object_store", lambda settings: store)


@pytest.mark.asyncio
async def test_set_thumbnail_points_row_at_uploaded_image(monkeypatch) -> None:
    video_id = uuid4()
    key = f"videos/{video_id}/thumbnail/new.png"
    store = _FakeStore({key})
    mirror = _FakeMirror(missing=False)
    _install(monkeypatch, mirror=mirror, store=store)

    await steps.set_thumbnail(video_id=video_id, owner_id=7, key=key)

    assert mirror.replaced == [key]
    assert store.objects == {key}


@pytest.mark.asyncio
async def test_set_thumbnail_removes_upload_when_video_is_gone(monkeypatch) -> None:
    video_id = uuid4()
    key = f"videos/{video_id}/thumbnail/new.png"
    store = _FakeStore({key})
    _install(monkeypatch, mirror=_FakeMirror(missing=True), store=store)

    with pytest.raises(VideoNotFoundError):
        await steps.set_thumbnail(video_id=video_id, owner_id=7, key=key)

    assert store.objects == set()
