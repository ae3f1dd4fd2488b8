from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Sequence
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging import get_logger
from app.core.settings import Settings, get_settings
from app.db.models.mirror_task import (
    TASK_DEAD,
    TASK_DONE,
    TASK_PENDING,
    TASK_PROCESSING,
    MirrorTask,
)
from app.db.session import get_session_maker
from app.mux.events import MirrorRequest
from app.storage.mirror import AssetMirror, get_asset_mirror
from app.storage.s3 import StorageNotConfiguredError
from app.videos.lookup import VideoKey

logger = get_logger(__name__)

MAX_ERROR_CHARS = 2000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RetryPlan:
    status: str
    attempts: int
    next_attempt_at: datetime


def backoff_seconds(attempts: int, *, base_seconds: int, max_seconds: int) -> int:
    return int(min(max_seconds, base_seconds * (2 ** max(0, attempts))))


def plan_retry(
    attempts: int,
    *,
    now: datetime,
    max_attempts: int,
    base_seconds: int,
    max_seconds: int,
) -> RetryPlan:
    """
    Next state of a task that just failed, given how many attempts it had before.
    Reaching `max_attempts` dead-letters it; dead tasks are never claimed again.
    """
    n = int(attempts or 0) + 1
    if n >= max_attempts:
        return RetryPlan(status=TASK_DEAD, attempts=n, next_attempt_at=now)
    delay = backoff_seconds(n, base_seconds=base_seconds, max_seconds=max_seconds)
    return RetryPlan(status=TASK_PENDING, attempts=n, next_attempt_at=now + timedelta(seconds=delay))


async def enqueue(db: AsyncSession, *, video_id: UUID, request: MirrorRequest) -> MirrorTask:
    """Add a task inside the caller's transaction. Does not commit."""
    task = MirrorTask(
        video_id=video_id,
        role=request.role,
        source_url=request.source_url,
        playback_id=request.playback_id,
        status=TASK_PENDING,
        attempts=0,
        next_attempt_at=_utcnow(),
    )
    db.add(task)
    await db.flush()
    return task


async def claim(
    db: AsyncSession,
    *,
    ids: Sequence[UUID] | None = None,
    limit: int = 20,
    lease_seconds: int = 300,
    now: datetime | None = None,
) -> list[MirrorTask]:
    """
    Claim due tasks with SELECT ... FOR UPDATE SKIP LOCKED and mark them processing.

    A processing task's `next_attempt_at` is its lease deadline, so a worker that
    died mid-task leaves a row that becomes claimable again once the lease runs out.
    Does not commit.
    """
    now = now or _utcnow()
    q = (
        select(MirrorTask)
        .where(
            and_(
                or_(MirrorTask.status == TASK_PENDING, MirrorTask.status == TASK_PROCESSING),
                MirrorTask.next_attempt_at <= now,
            )
        )
        .order_by(MirrorTask.next_attempt_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    if ids is not None:
        q = q.where(MirrorTask.id.in_(list(ids)))

    res = await db.execute(q)
    rows = list(res.scalars().all())
    for r in rows:
        r.status = TASK_PROCESSING
        r.next_attempt_at = now + timedelta(seconds=lease_seconds)
    await db.flush()
    return rows


async def mark_done(db: AsyncSession, task_id: UUID) -> None:
    await db.execute(
        update(MirrorTask)
        .where(MirrorTask.id == task_id)
        .values(status=TASK_DONE, last_error=None)
        .execution_options(synchronize_session=False)
    )


async def mark_failed(
    db: AsyncSession,
    task_id: UUID,
    *,
    attempts: int,
    error: str,
    settings: Settings,
    now: datetime | None = None,
) -> RetryPlan:
    plan = plan_retry(
        attempts,
        now=now or _utcnow(),
        max_attempts=int(settings.mirror_max_attempts),
        base_seconds=int(settings.mirror_backoff_base_seconds),
        max_seconds=int(settings.mirror_backoff_max_seconds),
    )
    await db.execute(
        update(MirrorTask)
        .where(MirrorTask.id == task_id)
        .values(
            status=plan.status,
            attempts=plan.attempts,
            next_attempt_at=plan.next_attempt_at,
            last_error=(error or "")[:MAX_ERROR_CHARS],
        )
        .execution_options(synchronize_session=False)
    )
    return plan


class MirrorWorker:
    """Claims mirror tasks and runs them through AssetMirror, one at a time."""

    def __init__(
        self,
        *,
        settings: Settings,
        mirror: AssetMirror,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
    ):
        self._settings = settings
        self._mirror = mirror
        self._session_maker = session_maker or get_session_maker()

    async def process(self, *, ids: Sequence[UUID] | None = None, limit: int = 20) -> int:
        """Process one batch. Returns the number of tasks claimed."""
        # Claim in a short transaction; the copy itself runs without holding row locks.
        async with self._session_maker() as db:
            tasks = await claim(
                db,
                ids=ids,
                limit=limit,
                lease_seconds=int(self._settings.mirror_lease_seconds),
            )
            await db.commit()

        for task in tasks:
            await self._run_one(task)
        return len(tasks)

    async def _run_one(self, task: MirrorTask) -> None:
        log = logger.bind(task_id=str(task.id), video_id=str(task.video_id), role=task.role)
        try:
            outcome = await self._mirror.mirror(
                VideoKey.for_id(task.video_id),
                role=task.role,
                source_url=task.source_url,
                playback_id=task.playback_id,
            )
        except Exception as e:
            async with self._session_maker() as db:
                plan = await mark_failed(
                    db,
                    task.id,
                    attempts=int(task.attempts or 0),
                    error=f"{type(e).__name__}: {e}",
                    settings=self._settings,
                )
                await db.commit()
            if plan.status == TASK_DEAD:
                log.error("mirror_task_dead", attempts=plan.attempts, error=str(e))
            else:
                log.warning(
                    "mirror_task_failed",
                    attempts=plan.attempts,
                    retry_at=plan.next_attempt_at.isoformat(),
                    error=str(e),
                )
            return

        async with self._session_maker() as db:
            await mark_done(db, task.id)
            await db.commit()
        log.info("mirror_task_done", outcome=outcome.status)


def get_mirror_worker(settings: Settings) -> MirrorWorker:
    return MirrorWorker(settings=settings, mirror=get_asset_mirror(settings))


async def dispatch_mirror_tasks(task_ids: list[UUID]) -> None:
    """
    Background task: run freshly enqueued tasks right after the response.
    Anything that fails here is left for the relay to retry.
    """
    if not task_ids:
        return
    settings = get_settings()
    try:
        worker = get_mirror_worker(settings)
    except StorageNotConfiguredError:
        logger.warning("mirror_dispatch_skipped", reason="storage not configured", tasks=len(task_ids))
        return
    try:
        await worker.process(ids=task_ids, limit=len(task_ids))
    except Exception:
        logger.exception("mirror_dispatch_failed", tasks=len(task_ids))


async def run_mirror_relay(poll_interval_seconds: float | None = None) -> None:
    """Drain due and retrying mirror tasks until cancelled."""
    settings = get_settings()
    interval = float(poll_interval_seconds or settings.mirror_poll_interval_seconds)
    worker = get_mirror_worker(settings)
    logger.info("mirror_relay_started", poll_interval_seconds=interval)
    try:
        while True:
            try:
                claimed = await worker.process()
            except Exception:
                logger.exception("mirror_relay_iteration_failed")
                claimed = 0
            if not claimed:
                await asyncio.sleep(interval)
            else:
                await asyncio.sleep(0)
    except asyncio.CancelledError:
        logger.info("mirror_relay_stopped")
        raise
