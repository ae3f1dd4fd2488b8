from __future__ import annotations

from uuid import UUID

from app.core.logging import get_logger
from app.db.session import get_session_maker
from app.schemas.workflow import ThumbnailJobInput, VideoJobInput
from app.workflows import steps
from app.workflows.engine import Job, RunStore, SqlRunStore, WorkflowContext, WorkflowOrchestrator

logger = get_logger(__name__)

WORKFLOW_TITLE = "title"
WORKFLOW_DESCRIPTION = "description"
WORKFLOW_THUMBNAIL = "thumbnail"


async def _get_video(ctx: WorkflowContext, payload: VideoJobInput) -> dict:
    return await ctx.run(
        "get-video",
        lambda: steps.load_video(video_id=payload.video_id, owner_id=payload.user_id),
        input={"videoId": str(payload.video_id), "userId": payload.user_id},
    )


async def _get_transcript(ctx: WorkflowContext, video: dict) -> str:
    return await ctx.run(
        "get-transcript",
        lambda: steps.fetch_transcript(playback_id=video.get("playbackId"), track_id=video.get("trackId")),
        input={"playbackId": video.get("playbackId"), "trackId": video.get("trackId")},
    )


async def title_job(ctx: WorkflowContext, payload: VideoJobInput) -> None:
    video = await _get_video(ctx, payload)
    transcript = await _get_transcript(ctx, video)
    title = await ctx.run("generate-title", lambda: steps.generate_title(transcript), input=transcript)
    await ctx.run(
        "update-video",
        lambda: steps.save_video_fields(video_id=payload.video_id, owner_id=payload.user_id, values={"title": title}),
        input={"title": title},
    )


async def description_job(ctx: WorkflowContext, payload: VideoJobInput) -> None:
    video = await _get_video(ctx, payload)
    transcript = await _get_transcript(ctx, video)
    description = await ctx.run(
        "generate-description", lambda: steps.generate_description(transcript), input=transcript
    )
    await ctx.run(
        "update-video",
        lambda: steps.save_video_fields(
            video_id=payload.video_id, owner_id=payload.user_id, values={"description": description}
        ),
        input={"description": description},
    )


async def thumbnail_job(ctx: WorkflowContext, payload: ThumbnailJobInput) -> None:
    await _get_video(ctx, payload)
    await ctx.run(
        "delete-old-thumbnail",
        lambda: steps.clear_thumbnail(video_id=payload.video_id, owner_id=payload.user_id),
        input={"videoId": str(payload.video_id)},
    )
    image_url = await ctx.run(
        "generate-thumbnail", lambda: steps.generate_thumbnail(payload.prompt), input={"prompt": payload.prompt}
    )
    stored = await ctx.run(
        "upload-thumbnail",
        lambda: steps.upload_thumbnail(video_id=payload.video_id, image_url=image_url),
        input={"url": image_url},
    )
    await ctx.run(
        "update-video",
        lambda: steps.set_thumbnail(video_id=payload.video_id, owner_id=payload.user_id, key=stored["key"]),
        input=stored,
    )


JOBS: dict[str, Job] = {
    WORKFLOW_TITLE: Job(name=WORKFLOW_TITLE, payload_model=VideoJobInput, handler=title_job),
    WORKFLOW_DESCRIPTION: Job(name=WORKFLOW_DESCRIPTION, payload_model=VideoJobInput, handler=description_job),
    WORKFLOW_THUMBNAIL: Job(name=WORKFLOW_THUMBNAIL, payload_model=ThumbnailJobInput, handler=thumbnail_job),
}


def get_orchestrator(store: RunStore | None = None) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(store or SqlRunStore(get_session_maker()), JOBS)


async def execute_workflow_run(run_id: UUID) -> None:
    """Background task entrypoint. Failures are recorded on the run, never raised to the caller."""
    try:
        await get_orchestrator().execute(run_id)
    except Exception:
        logger.exception("workflow_execute_failed", run_id=str(run_id))


async def resume_workflows() -> None:
    try:
        await get_orchestrator().resume_incomplete()
    except Exception:
        logger.exception("workflow_resume_failed")
