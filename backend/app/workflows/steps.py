"""
Side-effecting building blocks for the enrichment jobs.

Jobs call these through the module (`steps.fetch_transcript(...)`) so tests can
monkeypatch any one of them.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import httpx

from app.ai.generation import GenerationError, ImageGenerator, TextGenerator
from app.core.settings import get_settings
from app.db.models.mirror_task import ROLE_THUMBNAIL
from app.db.session import get_session_maker
from app.mux.urls import derive_transcript_url
from app.storage.mirror import VideoMissingError, get_asset_mirror
from app.storage.s3 import get_object_store, object_prefix
from app.videos.lookup import VideoKey, get_video, update_video
from app.workflows.errors import EmptyTranscriptError, UpstreamError, VideoNotFoundError


async def load_video(*, video_id: UUID, owner_id: int) -> dict[str, Any]:
    SessionLocal = get_session_maker()
    async with SessionLocal() as db:
        video = await get_video(db, VideoKey.for_id(video_id, owner_id))
    if video is None:
        raise VideoNotFoundError("Not Found")
    return {
        "id": str(video.id),
        "ownerId": int(video.owner_id),
        "playbackId": video.mux_playback_id,
        "trackId": video.mux_track_id,
        "thumbnailKey": video.thumbnail_key,
    }


async def fetch_transcript(*, playback_id: str | None, track_id: str | None) -> str:
    if not playback_id or not track_id:
        raise EmptyTranscriptError("No transcript track for this video yet")
    settings = get_settings()
    url = derive_transcript_url(playback_id=playback_id, track_id=track_id)
    try:
        async with httpx.AsyncClient(timeout=float(settings.transcript_timeout_seconds)) as client:
            res = await client.get(url)
            res.raise_for_status()
            text = res.text
    except httpx.HTTPError as e:
        raise UpstreamError(f"Transcript fetch failed: {e}") from e
    text = (text or "").strip()
    if not text:
        raise EmptyTranscriptError("Transcript is empty")
    return text


async def generate_title(transcript: str) -> str:
    try:
        return await TextGenerator(get_settings()).generate_title(transcript)
    except GenerationError as e:
        raise UpstreamError(str(e)) from e


async def generate_description(transcript: str) -> str:
    try:
        return await TextGenerator(get_settings()).generate_description(transcript)
    except GenerationError as e:
        raise UpstreamError(str(e)) from e


async def generate_thumbnail(prompt: str) -> str:
    try:
        return await ImageGenerator(get_settings()).generate(prompt)
    except GenerationError as e:
        raise UpstreamError(str(e)) from e


async def save_video_fields(*, video_id: UUID, owner_id: int, values: dict[str, Any]) -> None:
    SessionLocal = get_session_maker()
    async with SessionLocal() as db:
        written = await update_video(db, VideoKey.for_id(video_id, owner_id), values)
        await db.commit()
    if not written:
        raise VideoNotFoundError("Not Found")


async def clear_thumbnail(*, video_id: UUID, owner_id: int) -> None:
    mirror = get_asset_mirror(get_settings())
    if not await mirror.clear_thumbnail(video_id=video_id, owner_id=owner_id):
        raise VideoNotFoundError("Not Found")


async def upload_thumbnail(*, video_id: UUID, image_url: str) -> dict[str, str]:
    """Copy the generator's temporary image into storage. Returns {"key", "url"}."""
    store = get_object_store(get_settings())
    try:
        stored = await store.upload_from_url(image_url, prefix=object_prefix(video_id=video_id, role=ROLE_THUMBNAIL))
    except httpx.HTTPError as e:
        raise UpstreamError(f"Generated image fetch failed: {e}") from e
    return {"key": stored.key, "url": stored.url}


async def set_thumbnail(*, video_id: UUID, owner_id: int, key: str) -> None:
    settings = get_settings()
    mirror = get_asset_mirror(settings)
    try:
        await mirror.replace_thumbnail(video_id=video_id, owner_id=owner_id, key=key)
    except VideoMissingError as e:
        # The video went away after upload-thumbnail; nothing will ever reference the image.
        await get_object_store(settings).delete(key)
        raise VideoNotFoundError("Not Found") from e
