from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable

from app.db.models.mirror_task import ROLE_PREVIEW, ROLE_THUMBNAIL
from app.mux.urls import derive_preview_url, derive_thumbnail_url, duration_to_ms
from app.videos.lookup import VideoKey

EVENT_ASSET_CREATED = "video.asset.created"
EVENT_ASSET_READY = "video.asset.ready"
EVENT_ASSET_ERRORED = "video.asset.errored"
EVENT_ASSET_DELETED = "video.asset.deleted"
EVENT_TRACK_READY = "video.asset.track.ready"

ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTION_IGNORE = "ignore"


class WebhookPayloadError(ValueError):
    pass


@dataclass(frozen=True)
class MirrorRequest:
    role: str
    source_url: str
    playback_id: str


@dataclass(frozen=True)
class Transition:
    """
    What one webhook event does to the video table.

    Computed only from the event, never from the row it lands on, so applying
    the same event twice writes the same values twice.
    """

    action: str
    key: VideoKey | None = None
    values: dict[str, Any] = field(default_factory=dict)
    # Provider-hosted URLs, written only where the role has no stored copy yet.
    provider_urls: dict[str, str] = field(default_factory=dict)
    mirrors: tuple[MirrorRequest, ...] = ()
    reason: str | None = None


def parse_event(body: bytes) -> tuple[str, dict[str, Any]]:
    try:
        payload = json.loads(body or b"")
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise WebhookPayloadError("Body is not valid JSON") from e

    if not isinstance(payload, dict):
        raise WebhookPayloadError("Body must be a JSON object")
    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type.strip():
        raise WebhookPayloadError("Missing event type")
    data = payload.get("data")
    if not isinstance(data, dict):
        raise WebhookPayloadError("Missing event data")
    return event_type.strip(), data


def _str_field(data: dict[str, Any], name: str) -> str | None:
    v = data.get(name)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _require(data: dict[str, Any], name: str, message: str) -> str:
    v = _str_field(data, name)
    if v is None:
        raise WebhookPayloadError(message)
    return v


def _first_playback_id(data: dict[str, Any]) -> str | None:
    ids = data.get("playback_ids")
    if not isinstance(ids, list):
        return None
    for item in ids:
        if isinstance(item, dict):
            pb = _str_field(item, "id")
            if pb:
                return pb
    return None


def _on_asset_created(data: dict[str, Any]) -> Transition:
    upload_id = _require(data, "upload_id", "Missing upload Id")
    values = {
        k: v
        for k, v in {"mux_asset_id": _str_field(data, "id"), "mux_status": _str_field(data, "status")}.items()
        if v is not None
    }
    if not values:
        return Transition(action=ACTION_IGNORE, reason="nothing to update")
    return Transition(action=ACTION_UPDATE, key=VideoKey.upload(upload_id), values=values)


def _on_asset_ready(data: dict[str, Any]) -> Transition:
    upload_id = _str_field(data, "upload_id")
    playback_id = _first_playback_id(data)
    if not upload_id or not playback_id:
        raise WebhookPayloadError("Missing upload Id or playback ID")

    thumbnail_url = derive_thumbnail_url(playback_id)
    preview_url = derive_preview_url(playback_id)
    values: dict[str, Any] = {
        "mux_status": _str_field(data, "status") or "ready",
        "mux_playback_id": playback_id,
        "duration": duration_to_ms(data.get("duration")),
    }
    asset_id = _str_field(data, "id")
    if asset_id:
        values["mux_asset_id"] = asset_id

    return Transition(
        action=ACTION_UPDATE,
        key=VideoKey.upload(upload_id),
        values=values,
        provider_urls={"thumbnail_url": thumbnail_url, "preview_url": preview_url},
        mirrors=(
            MirrorRequest(role=ROLE_THUMBNAIL, source_url=thumbnail_url, playback_id=playback_id),
            MirrorRequest(role=ROLE_PREVIEW, source_url=preview_url, playback_id=playback_id),
        ),
    )


def _on_asset_errored(data: dict[str, Any]) -> Transition:
    upload_id = _require(data, "upload_id", "Missing upload Id")
    return Transition(
        action=ACTION_UPDATE,
        key=VideoKey.upload(upload_id),
        values={"mux_status": _str_field(data, "status") or "errored"},
    )


def _on_asset_deleted(data: dict[str, Any]) -> Transition:
    upload_id = _require(data, "upload_id", "Missing upload Id")
    return Transition(action=ACTION_DELETE, key=VideoKey.upload(upload_id))


def _on_track_ready(data: dict[str, Any]) -> Transition:
    asset_id = _require(data, "asset_id", "Missing asset ID")
    track_type = _str_field(data, "type")
    if track_type is not None and track_type != "text":
        # Only text tracks carry the transcript the workflows read.
        return Transition(action=ACTION_IGNORE, reason=f"{track_type} track")
    values = {
        k: v
        for k, v in {"mux_track_id": _str_field(data, "id"), "mux_track_status": _str_field(data, "status")}.items()
        if v is not None
    }
    if not values:
        return Transition(action=ACTION_IGNORE, reason="nothing to update")
    return Transition(action=ACTION_UPDATE, key=VideoKey.asset(asset_id), values=values)


_HANDLERS: dict[str, Callable[[dict[str, Any]], Transition]] = {
    EVENT_ASSET_CREATED: _on_asset_created,
    EVENT_ASSET_READY: _on_asset_ready,
    EVENT_ASSET_ERRORED: _on_asset_errored,
    EVENT_ASSET_DELETED: _on_asset_deleted,
    EVENT_TRACK_READY: _on_track_ready,
}


def plan_transition(event_type: str, data: dict[str, Any]) -> Transition:
    """Raises WebhookPayloadError when a correlation field is missing."""
    handler = _HANDLERS.get(event_type)
    if handler is None:
        return Transition(action=ACTION_IGNORE, reason="unhandled event type")
    return handler(data)
