from __future__ import annotations

from typing import Literal
from uuid import UUID

import httpx
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user
from app.core.logging import get_logger
from app.core.settings import Settings, get_settings
from app.db.models.mirror_task import ROLE_THUMBNAIL
from app.db.models.user import User
from app.db.models.video import STATUS_WAITING, VISIBILITY_PRIVATE, Video
from app.db.session import get_db
from app.mux.client import delete_provider_asset, get_mux_client
from app.schemas.workflow import ThumbnailPromptIn, TriggerResponse
from app.storage.mirror import (
    AssetMirror,
    MirrorConflictError,
    NoPlaybackIdError,
    VideoMissingError,
    get_asset_mirror,
    purge_stored_objects,
)
from app.storage.s3 import ObjectStore, StorageNotConfiguredError, get_object_store, object_prefix
from app.videos.lookup import VideoKey, delete_video, get_video
from app.workflows.errors import InvalidPayloadError, UnknownWorkflowError
from app.workflows.jobs import WORKFLOW_THUMBNAIL, execute_workflow_run, get_orchestrator

logger = get_logger(__name__)

router = APIRouter(prefix="/videos", tags=["videos"])

_THUMBNAIL_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp"}


class VideoCreateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=5000)
    categoryId: UUID | None = None
    visibility: Literal["private", "public"] = VISIBILITY_PRIVATE


class VideoPublic(BaseModel):
    id: UUID
    title: str
    description: str | None
    categoryId: UUID | None
    visibility: str

    muxStatus: str | None
    muxUploadId: str | None
    muxAssetId: str | None
    muxPlaybackId: str | None
    muxTrackId: str | None
    muxTrackStatus: str | None
    duration: int

    thumbnailUrl: str | None
    previewUrl: str | None

    createdAt: str
    updatedAt: str


class VideoCreateResponse(BaseModel):
    video: VideoPublic
    uploadUrl: str


class ThumbnailPresignRequest(BaseModel):
    contentType: str


class ThumbnailPresignResponse(BaseModel):
    key: str
    uploadUrl: str
    method: str = "PUT"
    expiresInSeconds: int


class ThumbnailFinalizeRequest(BaseModel):
    key: str = Field(min_length=1, max_length=1024)


def _video_to_public(video: Video) -> VideoPublic:
    return VideoPublic(
        id=video.id,
        title=video.title,
        description=video.description,
        categoryId=video.category_id,
        visibility=video.visibility,
        muxStatus=video.mux_status,
        muxUploadId=video.mux_upload_id,
        muxAssetId=video.mux_asset_id,
        muxPlaybackId=video.mux_playback_id,
        muxTrackId=video.mux_track_id,
        muxTrackStatus=video.mux_track_status,
        duration=int(video.duration or 0),
        thumbnailUrl=video.thumbnail_url,
        previewUrl=video.preview_url,
        createdAt=video.created_at.isoformat(),
        updatedAt=video.updated_at.isoformat(),
    )


async def _ensure_owned_video(db: AsyncSession, *, video_id: UUID, user_id: int) -> Video:
    video = await get_video(db, VideoKey.for_id(video_id, user_id))
    if video is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    return video


def _object_store(settings: Settings) -> ObjectStore:
    try:
        return get_object_store(settings)
    except StorageNotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=str(e)) from e


def _asset_mirror(settings: Settings) -> AssetMirror:
    try:
        return get_asset_mirror(settings)
    except StorageNotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=str(e)) from e


@router.post("", response_model=VideoCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_video(
    body: VideoCreateRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
) -> VideoCreateResponse:
    """
    Create a Mux direct upload and the row that tracks it.

    The row starts in `waiting`; everything after that arrives by webhook.
    """
    body = body or VideoCreateRequest()
    try:
        mux = get_mux_client(settings)
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=str(e)) from e

    try:
        upload = await mux.create_direct_upload(
            cors_origin=settings.mux_upload_cors_origin,
            subtitles_language_code=settings.mux_subtitles_language_code,
        )
    except (httpx.HTTPError, RuntimeError) as e:
        logger.warning("mux_upload_create_failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to create upload") from e

    video = Video(
        title=(body.title or "").strip() or "Untitled",
        description=body.description,
        category_id=body.categoryId,
        visibility=body.visibility,
        owner_id=current_user.id,
        mux_upload_id=upload.id,
        mux_status=STATUS_WAITING,
    )
    db.add(video)
    await db.commit()
    await db.refresh(video)

    logger.info("video_created", video_id=str(video.id), mux_upload_id=upload.id)
    return VideoCreateResponse(video=_video_to_public(video), uploadUrl=upload.url)


@router.get("/{video_id}", response_model=VideoPublic)
async def get_owned_video(
    video_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> VideoPublic:
    video = await _ensure_owned_video(db, video_id=video_id, user_id=current_user.id)
    return _video_to_public(video)


@router.delete("/{video_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_owned_video(
    video_id: UUID,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Response:
    deleted = await delete_video(db, VideoKey.for_id(video_id, current_user.id))
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    await db.commit()

    # The provider will answer with a `deleted` webhook, which finds no row and is a no-op.
    for d in deleted:
        if d.stored_keys:
            background_tasks.add_task(purge_stored_objects, list(d.stored_keys))
        if d.mux_asset_id:
            background_tasks.add_task(delete_provider_asset, d.mux_asset_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{video_id}/thumbnail/restore", response_model=VideoPublic)
async def restore_thumbnail(
    video_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
) -> VideoPublic:
    """Replace the current thumbnail with the provider's default frame for this video."""
    mirror = _asset_mirror(settings)
    try:
        await mirror.restore_thumbnail(video_id=video_id, owner_id=current_user.id)
    except VideoMissingError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    except NoPlaybackIdError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except MirrorConflictError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Video changed, try again")
    except (httpx.HTTPError, ClientError, BotoCoreError) as e:
        logger.warning("thumbnail_restore_failed", video_id=str(video_id), error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to restore thumbnail") from e

    video = await _ensure_owned_video(db, video_id=video_id, user_id=current_user.id)
    return _video_to_public(video)


@router.post("/{video_id}/thumbnail/presign", response_model=ThumbnailPresignResponse)
async def presign_thumbnail_upload(
    video_id: UUID,
    body: ThumbnailPresignRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
) -> ThumbnailPresignResponse:
    store = _object_store(settings)
    await _ensure_owned_video(db, video_id=video_id, user_id=current_user.id)

    content_type = (body.contentType or "").strip().lower()
    if content_type not in _THUMBNAIL_CONTENT_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported image type")

    key = store.new_key(object_prefix(video_id=video_id, role=ROLE_THUMBNAIL), content_type)
    try:
        upload_url = store.presign_put(key=key, content_type=content_type)
    except (ClientError, BotoCoreError) as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to presign upload") from e

    return ThumbnailPresignResponse(
        key=key,
        uploadUrl=upload_url,
        expiresInSeconds=int(settings.s3_presign_expires_seconds),
    )


@router.post("/{video_id}/thumbnail", response_model=VideoPublic)
async def finalize_thumbnail_upload(
    video_id: UUID,
    body: ThumbnailFinalizeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
) -> VideoPublic:
    """Point the video at a thumbnail the client PUT through a presigned URL."""
    mirror = _asset_mirror(settings)
    try:
        await mirror.replace_thumbnail(video_id=video_id, owner_id=current_user.id, key=body.key.strip())
    except VideoMissingError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    except MirrorConflictError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Video changed, try again")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    video = await _ensure_owned_video(db, video_id=video_id, user_id=current_user.id)
    return _video_to_public(video)


@router.post(
    "/{video_id}/workflows/{name}",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_video_workflow(
    video_id: UUID,
    name: str,
    background_tasks: BackgroundTasks,
    body: ThumbnailPromptIn | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> TriggerResponse:
    await _ensure_owned_video(db, video_id=video_id, user_id=current_user.id)

    payload: dict = {"userId": current_user.id, "videoId": str(video_id)}
    if name == WORKFLOW_THUMBNAIL:
        if body is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Prompt is required")
        payload["prompt"] = body.prompt

    orchestrator = get_orchestrator()
    try:
        run_id = await orchestrator.trigger(name, payload)
    except UnknownWorkflowError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown workflow")
    except InvalidPayloadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    background_tasks.add_task(execute_workflow_run, run_id)
    return TriggerResponse(run_id=run_id)
