from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.video import Video

KIND_UPLOAD = "upload"
KIND_ASSET = "asset"
KIND_ID = "id"

# Mirrored URL column -> the stored-object key column it belongs to.
STORED_URL_KEYS = {"thumbnail_url": "thumbnail_key", "preview_url": "preview_key"}


@dataclass(frozen=True)
class VideoKey:
    """
    One way of addressing a single video row.

    Webhooks correlate by provider upload id (most events) or provider asset id
    (track events); user actions and workflows address a row by (id, owner).
    Every read, update and delete goes through `where()` so a handler cannot
    match on the wrong column.
    """

    kind: str
    value: str | UUID
    owner_id: int | None = None

    @classmethod
    def upload(cls, upload_id: str) -> "VideoKey":
        return cls(kind=KIND_UPLOAD, value=str(upload_id))

    @classmethod
    def asset(cls, asset_id: str) -> "VideoKey":
        return cls(kind=KIND_ASSET, value=str(asset_id))

    @classmethod
    def for_id(cls, video_id: UUID | str, owner_id: int | None = None) -> "VideoKey":
        return cls(kind=KIND_ID, value=UUID(str(video_id)), owner_id=owner_id)

    def where(self) -> list[Any]:
        if self.kind == KIND_UPLOAD:
            clauses = [Video.mux_upload_id == self.value]
        elif self.kind == KIND_ASSET:
            clauses = [Video.mux_asset_id == self.value]
        elif self.kind == KIND_ID:
            clauses = [Video.id == self.value]
        else:
            raise ValueError(f"Unknown video key kind: {self.kind}")
        if self.owner_id is not None:
            clauses.append(Video.owner_id == self.owner_id)
        return clauses

    def describe(self) -> dict[str, Any]:
        out: dict[str, Any] = {f"video_{self.kind}": str(self.value)}
        if self.owner_id is not None:
            out["owner_id"] = self.owner_id
        return out


async def get_video(db: AsyncSession, key: VideoKey) -> Video | None:
    res = await db.execute(select(Video).where(*key.where()))
    return res.scalar_one_or_none()


def template_url_unless_stored(url_field: str, url: str) -> Any:
    """
    SET expression for a mirrored URL column: the provider template only while the
    role has no stored object, so key and URL never describe different objects.
    """
    key_col = getattr(Video, STORED_URL_KEYS[url_field])
    return case((key_col.is_(None), url), else_=getattr(Video, url_field))


async def update_video(
    db: AsyncSession,
    key: VideoKey,
    values: dict[str, Any],
    *,
    expected: dict[str, Any] | None = None,
) -> int:
    """
    Apply `values` to the matched row and bump `version`.

    With `expected` (column -> value, None meaning NULL) the write only lands if
    those columns still hold those values; callers treat a 0 rowcount as a lost
    race. Returns the number of rows written. Does not commit.
    """
    stmt = update(Video).where(*key.where())
    for field_name, value in (expected or {}).items():
        col = getattr(Video, field_name)
        stmt = stmt.where(col.is_(None) if value is None else col == value)
    stmt = stmt.values(**values, version=Video.version + 1).execution_options(synchronize_session=False)
    res = await db.execute(stmt)
    return int(res.rowcount or 0)


@dataclass(frozen=True)
class DeletedVideo:
    id: UUID
    mux_asset_id: str | None
    stored_keys: tuple[str, ...]


async def delete_video(db: AsyncSession, key: VideoKey) -> list[DeletedVideo]:
    """Delete matched rows (dependents go by FK cascade). Does not commit."""
    res = await db.execute(
        delete(Video)
        .where(*key.where())
        .returning(Video.id, Video.mux_asset_id, Video.thumbnail_key, Video.preview_key)
        .execution_options(synchronize_session=False)
    )
    deleted: list[DeletedVideo] = []
    for video_id, asset_id, thumb_key, preview_key in res.all():
        keys = tuple(k for k in (thumb_key, preview_key) if k)
        deleted.append(DeletedVideo(id=video_id, mux_asset_id=asset_id, stored_keys=keys))
    return deleted
