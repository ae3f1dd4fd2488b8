from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from app.core.logging import get_logger
from app.core.settings import Settings, get_settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class DirectUpload:
    id: str
    url: str


class MuxClient:
    """Minimal Mux Video REST client (direct uploads + asset deletion).

    Endpoints used:
      POST   {base}/video/v1/uploads
      DELETE {base}/video/v1/assets/{asset_id}
    """

    def __init__(self, *, token_id: str, token_secret: str, base_url: str, timeout: float = 15.0):
        self._auth = httpx.BasicAuth(token_id, token_secret)
        self._base = base_url.rstrip("/")
        self._timeout = timeout

    async def create_direct_upload(
        self,
        *,
        cors_origin: str,
        subtitles_language_code: str | None = "en",
    ) -> DirectUpload:
        new_asset_settings: dict[str, Any] = {"playback_policy": ["public"]}
        if subtitles_language_code:
            # Generated subtitles feed the transcript used by the title/description workflows.
            new_asset_settings["input"] = [
                {
                    "generated_subtitles": [
                        {"language_code": subtitles_language_code, "name": subtitles_language_code.upper()}
                    ]
                }
            ]

        async with httpx.AsyncClient(timeout=self._timeout, auth=self._auth) as client:
            res = await client.post(
                f"{self._base}/video/v1/uploads",
                json={"cors_origin": cors_origin, "new_asset_settings": new_asset_settings},
            )
            res.raise_for_status()
            data = (res.json() or {}).get("data") or {}

        upload_id = str(data.get("id") or "").strip()
        upload_url = str(data.get("url") or "").strip()
        if not upload_id or not upload_url:
            raise RuntimeError("Mux upload response missing id or url")
        return DirectUpload(id=upload_id, url=upload_url)

    async def delete_asset(self, asset_id: str) -> bool:
        """Returns False when the asset is already gone."""
        async with httpx.AsyncClient(timeout=self._timeout, auth=self._auth) as client:
            res = await client.delete(f"{self._base}/video/v1/assets/{asset_id}")
            if res.status_code == 404:
                return False
            res.raise_for_status()
            return True


def get_mux_client(settings: Settings) -> MuxClient:
    if not settings.mux_token_id or not settings.mux_token_secret:
        raise RuntimeError("Mux is not configured (MUX_TOKEN_ID/MUX_TOKEN_SECRET missing)")
    return MuxClient(
        token_id=settings.mux_token_id,
        token_secret=settings.mux_token_secret,
        base_url=settings.mux_api_base_url,
        timeout=float(settings.mux_timeout_seconds),
    )


async def delete_provider_asset(asset_id: str) -> None:
    """Background task: remove the provider asset behind a video the user deleted."""
    settings = get_settings()
    try:
        client = get_mux_client(settings)
    except RuntimeError:
        logger.warning("mux_asset_delete_skipped", reason="mux not configured", asset_id=asset_id)
        return
    try:
        deleted = await client.delete_asset(asset_id)
    except httpx.HTTPError:
        logger.exception("mux_asset_delete_failed", asset_id=asset_id)
        return
    logger.info("mux_asset_deleted", asset_id=asset_id, existed=deleted)
