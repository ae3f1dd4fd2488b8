import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.router import api_router
from app.api.webhooks import mux as mux_webhook
from app.api.webhooks import workflows as workflow_trigger
from app.core.logging import configure_logging, get_logger
from app.core.settings import get_settings
from app.db.session import dispose_engine, get_db
from app.storage.queue import run_mirror_relay
from app.workflows.jobs import resume_workflows

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    background: list[asyncio.Task] = []

    if settings.mirror_relay_enabled:
        if settings.s3_bucket:
            background.append(asyncio.create_task(run_mirror_relay(), name="mirror-relay"))
        else:
            logger.warning("mirror_relay_disabled", reason="S3 is not configured (missing S3_BUCKET)")

    if settings.workflow_resume_on_startup:
        background.append(asyncio.create_task(resume_workflows(), name="workflow-resume"))

    logger.info("application_started", background_tasks=[t.get_name() for t in background])
    yield

    for task in background:
        task.cancel()
    for task in background:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await dispose_engine()
    logger.info("application_stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(title="Streamline API", lifespan=lifespan)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(mux_webhook.router)
    app.include_router(workflow_trigger.router)
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/health/db")
    async def health_db(db: AsyncSession = Depends(get_db)):
        await db.execute(text("SELECT 1"))
        return {"ok": True}

    return app


app = create_app()
