from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.mux.events import ACTION_DELETE, ACTION_UPDATE, Transition
from app.storage.queue import enqueue
from app.videos.lookup import delete_video, get_video, template_url_unless_stored, update_video

logger = get_logger(__name__)


@dataclass
class AppliedTransition:
    """What landed, plus the follow-up work to run once the response is sent."""

    matched: int = 0
    mirror_task_ids: list[UUID] = field(default_factory=list)
    purge_keys: list[str] = field(default_factory=list)


async def apply_transition(db: AsyncSession, transition: Transition) -> AppliedTransition:
    """
    Write one planned transition and commit.

    Mirror tasks are inserted in the same transaction as the row update, so a
    committed ready event always has its copies queued. Zero matching rows is
    a no-op (row never created, or already deleted).
    """
    out = AppliedTransition()
    if transition.key is None:
        return out
    log = logger.bind(**transition.key.describe())

    if transition.action == ACTION_UPDATE:
        values = dict(transition.values)
        for url_field, url in transition.provider_urls.items():
            values[url_field] = template_url_unless_stored(url_field, url)
        out.matched = await update_video(db, transition.key, values)
        if out.matched and transition.mirrors:
            video = await get_video(db, transition.key)
            if video is not None:
                for req in transition.mirrors:
                    task = await enqueue(db, video_id=video.id, request=req)
                    out.mirror_task_ids.append(task.id)
        await db.commit()
        log.info(
            "video_updated",
            matched=out.matched,
            fields=sorted(values),
            mirror_tasks=len(out.mirror_task_ids),
        )
        return out

    if transition.action == ACTION_DELETE:
        deleted = await delete_video(db, transition.key)
        await db.commit()
        out.matched = len(deleted)
        for d in deleted:
            out.purge_keys.extend(d.stored_keys)
        log.info("video_deleted", matched=out.matched, purge_keys=len(out.purge_keys))
        return out

    return out
