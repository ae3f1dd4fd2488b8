from __future__ import annotations

import json

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status

from app.core.logging import get_logger
from app.core.security import SignatureError, verify_signature
from app.core.settings import Settings, get_settings
from app.schemas.workflow import TriggerResponse
from app.workflows.errors import InvalidPayloadError, UnknownWorkflowError
from app.workflows.jobs import execute_workflow_run, get_orchestrator

logger = get_logger(__name__)

router = APIRouter(prefix="/api/videos/workflows", tags=["workflows"])

SIGNATURE_HEADER = "x-workflow-signature"


@router.post("/{name}", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_workflow_signed(
    name: str,
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
) -> TriggerResponse:
    """Service-to-service trigger. Body `{userId, videoId, ...}` signed like the Mux webhook."""
    secret = (settings.workflow_signing_secret or "").strip()
    if not secret:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail="Workflow trigger is not configured")

    body = await request.body()
    try:
        verify_signature(
            body=body,
            header=request.headers.get(SIGNATURE_HEADER),
            secret=secret,
            tolerance_seconds=int(settings.mux_webhook_tolerance_seconds),
        )
    except SignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid workflow signature")

    try:
        payload = json.loads(body or b"")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")

    orchestrator = get_orchestrator()
    try:
        orchestrator.validate(name, payload)
    except UnknownWorkflowError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown workflow")
    except InvalidPayloadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    run_id = await orchestrator.trigger(name, payload)
    background_tasks.add_task(execute_workflow_run, run_id)
    return TriggerResponse(run_id=run_id)
