from __future__ import annotations

import math

IMAGE_BASE_URL = "https://image.mux.com"
STREAM_BASE_URL = "https://stream.mux.com"


def _require(value: str | None, name: str) -> str:
    v = (value or "").strip()
    if not v:
        raise ValueError(f"{name} is required")
    return v


def derive_thumbnail_url(playback_id: str) -> str:
    return f"{IMAGE_BASE_URL}/{_require(playback_id, 'playback_id')}/thumbnail.jpg"


def derive_preview_url(playback_id: str) -> str:
    return f"{IMAGE_BASE_URL}/{_require(playback_id, 'playback_id')}/animated.gif"


def derive_transcript_url(*, playback_id: str, track_id: str) -> str:
    """Plain-text rendition of a generated subtitle track."""
    pb = _require(playback_id, "playback_id")
    track = _require(track_id, "track_id")
    return f"{STREAM_BASE_URL}/{pb}/text/{track}.txt"


def duration_to_ms(seconds: float | int | None) -> int:
    """
    Provider durations are fractional seconds; we store whole milliseconds.

    Rounds half up (12.345 -> 12345, 0.0005 -> 1); missing -> 0.
    """
    if seconds is None:
        return 0
    try:
        value = float(seconds)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(value) or value <= 0:
        return 0
    return int(math.floor(value * 1000 + 0.5))
