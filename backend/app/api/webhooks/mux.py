from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.security import SignatureError, verify_signature
from app.core.settings import Settings, get_settings
from app.db.session import get_db
from app.mux.events import ACTION_IGNORE, WebhookPayloadError, parse_event, plan_transition
from app.mux.ingest import apply_transition
from app.storage.mirror import purge_stored_objects
from app.storage.queue import dispatch_mirror_tasks

logger = get_logger(__name__)

router = APIRouter(prefix="/api/videos", tags=["webhooks"])

SIGNATURE_HEADER = "mux-signature"


@router.post("/webhook", response_class=PlainTextResponse)
async def mux_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> PlainTextResponse:
    """
    Mux lifecycle webhook.

    Fast path only:
    - Verify the signature over the raw body
    - Plan the transition from (event type, payload) alone
    - Write the row (and queue mirror copies) in one transaction
    - Defer mirroring and object purges until after the response
    """
    secret = (settings.mux_webhook_secret or "").strip()
    if not secret:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail="Mux webhook is not configured")

    body = await request.body()
    try:
        verify_signature(
            body=body,
            header=request.headers.get(SIGNATURE_HEADER),
            secret=secret,
            tolerance_seconds=int(settings.mux_webhook_tolerance_seconds),
        )
    except SignatureError as e:
        logger.warning("mux_webhook_rejected", reason=str(e))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        event_type, data = parse_event(body)
        transition = plan_transition(event_type, data)
    except WebhookPayloadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    log = logger.bind(event_type=event_type)
    if transition.action == ACTION_IGNORE:
        log.info("mux_webhook_ignored", reason=transition.reason)
        return PlainTextResponse("Webhook received")

    applied = await apply_transition(db, transition)
    if applied.mirror_task_ids:
        background_tasks.add_task(dispatch_mirror_tasks, applied.mirror_task_ids)
    if applied.purge_keys:
        background_tasks.add_task(purge_stored_objects, applied.purge_keys)

    log.info("mux_webhook_applied", action=transition.action, matched=applied.matched)
    return PlainTextResponse("Webhook received")
