from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging import get_logger
from app.core.settings import Settings, get_settings
from app.db.models.mirror_task import ROLE_PREVIEW, ROLE_THUMBNAIL
from app.db.models.video import Video
from app.db.session import get_session_maker
from app.mux.urls import derive_thumbnail_url
from app.storage.s3 import (
    ObjectStore,
    StorageNotConfiguredError,
    StoredObject,
    get_object_store,
    object_prefix,
)
from app.videos.lookup import VideoKey, get_video, update_video

logger = get_logger(__name__)

ROLE_FIELDS: dict[str, tuple[str, str]] = {
    ROLE_THUMBNAIL: ("thumbnail_key", "thumbnail_url"),
    ROLE_PREVIEW: ("preview_key", "preview_url"),
}

OUTCOME_MIRRORED = "mirrored"
OUTCOME_STALE = "stale"
OUTCOME_MISSING = "missing"

REPLACE_ATTEMPTS = 3


class MirrorError(RuntimeError):
    pass


class MirrorConflictError(MirrorError):
    """The row changed between read and write; the caller should retry."""


class VideoMissingError(LookupError):
    pass


class NoPlaybackIdError(ValueError):
    pass


@dataclass(frozen=True)
class MirrorOutcome:
    status: str
    stored: StoredObject | None = None


def _fields(role: str) -> tuple[str, str]:
    try:
        return ROLE_FIELDS[role]
    except KeyError as e:
        raise ValueError(f"Unknown mirror role: {role}") from e


def _expected(key_field: str, current_key: str | None, playback_id: str | None) -> dict[str, str | None]:
    expected: dict[str, str | None] = {key_field: current_key}
    if playback_id is not None:
        expected["mux_playback_id"] = playback_id
    return expected


class AssetMirror:
    """
    Copies provider-hosted images into owned storage and keeps the row pointing
    at exactly one stored copy per role.

    Replacement order for a role:
      1. null the stored key on the row (compare-and-swap on that key), commit
      2. delete the old object
      3. upload the new object under a fresh key
      4. write the new key/url (compare-and-swap), or delete the upload on a lost race

    Only the role's own key column (and, for provider copies, the playback id)
    is compared, so writes to unrelated fields never count as a conflict.
    """

    def __init__(self, store: ObjectStore, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self._store = store
        self._session_maker = session_maker or get_session_maker()

    async def _release_role(
        self,
        db: AsyncSession,
        video: Video,
        role: str,
        *,
        fallback_url: str | None,
        playback_id: str | None = None,
    ) -> None:
        """Detach the stored object for `role` from the row, then delete it."""
        key_field, url_field = _fields(role)
        old_key = getattr(video, key_field)

        written = await update_video(
            db,
            VideoKey.for_id(video.id),
            {key_field: None, url_field: fallback_url},
            expected=_expected(key_field, old_key, playback_id),
        )
        if not written:
            await db.rollback()
            raise MirrorConflictError(f"video {video.id} changed while releasing {role}")
        await db.commit()

        if old_key:
            try:
                await self._store.delete(old_key)
            except Exception:
                # The row no longer references it; a leaked object is the worst case.
                logger.exception("mirror_old_object_delete_failed", video_id=str(video.id), key=old_key)

    async def _write_role(
        self,
        db: AsyncSession,
        video_id: UUID,
        role: str,
        stored: StoredObject,
        *,
        expected_key: str | None,
        playback_id: str | None = None,
    ) -> bool:
        """Returns False (after rolling back) when the role's key is no longer `expected_key`."""
        key_field, url_field = _fields(role)
        written = await update_video(
            db,
            VideoKey.for_id(video_id),
            {key_field: stored.key, url_field: stored.url},
            expected=_expected(key_field, expected_key, playback_id),
        )
        if not written:
            await db.rollback()
            return False
        await db.commit()
        return True

    async def mirror(
        self,
        key: VideoKey,
        *,
        role: str,
        source_url: str,
        playback_id: str | None = None,
    ) -> MirrorOutcome:
        """
        Copy `source_url` into storage as the `role` image of the matched video.

        With `playback_id`, a row whose playback id has since changed is left
        alone: the copy would be of an outdated asset.
        """
        _fields(role)
        async with self._session_maker() as db:
            video = await get_video(db, key)
            if video is None:
                return MirrorOutcome(status=OUTCOME_MISSING)
            if playback_id is not None and video.mux_playback_id != playback_id:
                return MirrorOutcome(status=OUTCOME_STALE)

            await self._release_role(db, video, role, fallback_url=source_url, playback_id=playback_id)
            stored = await self._store.upload_from_url(source_url, prefix=object_prefix(video_id=video.id, role=role))
            written = await self._write_role(
                db, video.id, role, stored, expected_key=None, playback_id=playback_id
            )

        if not written:
            # Our own fresh upload; nothing references it.
            await self._store.delete(stored.key)
            raise MirrorConflictError(f"video {video.id} changed while writing {role}")

        logger.info("asset_mirrored", video_id=str(video.id), role=role, key=stored.key)
        return MirrorOutcome(status=OUTCOME_MIRRORED, stored=stored)

    async def restore_thumbnail(self, *, video_id: UUID, owner_id: int) -> StoredObject:
        """Regenerate the thumbnail from the provider's canonical image for the current playback id."""
        async with self._session_maker() as db:
            video = await get_video(db, VideoKey.for_id(video_id, owner_id))
        if video is None:
            raise VideoMissingError(str(video_id))
        if not video.mux_playback_id:
            raise NoPlaybackIdError("Video has no playback id yet")

        outcome = await self.mirror(
            VideoKey.for_id(video_id, owner_id),
            role=ROLE_THUMBNAIL,
            source_url=derive_thumbnail_url(video.mux_playback_id),
            playback_id=video.mux_playback_id,
        )
        if outcome.stored is None:
            # Deleted, or the playback id moved, between the read above and the mirror.
            raise MirrorConflictError(f"video {video_id} changed during restore ({outcome.status})")
        return outcome.stored

    async def clear_thumbnail(self, *, video_id: UUID, owner_id: int) -> bool:
        """Delete the stored thumbnail and null its key/url. Returns False if the video is gone."""
        async with self._session_maker() as db:
            video = await get_video(db, VideoKey.for_id(video_id, owner_id))
            if video is None:
                return False
            await self._release_role(db, video, ROLE_THUMBNAIL, fallback_url=None)
        return True

    async def replace_thumbnail(self, *, video_id: UUID, owner_id: int, key: str) -> StoredObject:
        """
        Point the row at an already-uploaded object (custom or generated thumbnail)
        and drop the previous one.

        The object belongs to the caller and is never deleted here, even when the
        write keeps losing to concurrent thumbnail changes.
        """
        prefix = object_prefix(video_id=video_id, role=ROLE_THUMBNAIL)
        if not self._store.owns_key(key, prefix):
            raise ValueError("Invalid thumbnail key")
        stored = StoredObject(key=key, url=self._store.public_url(key))

        for attempt in range(1, REPLACE_ATTEMPTS + 1):
            async with self._session_maker() as db:
                video = await get_video(db, VideoKey.for_id(video_id, owner_id))
                if video is None:
                    raise VideoMissingError(str(video_id))
                old_key = video.thumbnail_key
                if await self._write_role(db, video.id, ROLE_THUMBNAIL, stored, expected_key=old_key):
                    break
            logger.info("thumbnail_replace_conflict", video_id=str(video_id), attempt=attempt)
        else:
            raise MirrorConflictError(f"video {video_id} thumbnail kept changing")

        if old_key and old_key != key:
            try:
                await self._store.delete(old_key)
            except Exception:
                logger.exception("mirror_old_object_delete_failed", video_id=str(video_id), key=old_key)
        return stored

    async def purge(self, keys: Iterable[str]) -> None:
        """Best-effort removal of objects whose row is gone."""
        for key in keys:
            try:
                await self._store.delete(key)
            except Exception:
                logger.exception("mirror_purge_failed", key=key)


def get_asset_mirror(settings: Settings) -> AssetMirror:
    return AssetMirror(get_object_store(settings))


async def purge_stored_objects(keys: list[str]) -> None:
    """Background task: remove mirrored objects left behind by a deleted row."""
    if not keys:
        return
    settings = get_settings()
    try:
        mirror = get_asset_mirror(settings)
    except StorageNotConfiguredError:
        logger.warning("mirror_purge_skipped", reason="storage not configured", keys=keys)
        return
    await mirror.purge(keys)
