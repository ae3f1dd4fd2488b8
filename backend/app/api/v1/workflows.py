from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from app.api.deps import get_current_user
from app.db.models.user import User
from app.schemas.workflow import RunPublic, StepPublic, TriggerResponse
from app.workflows.engine import RunRecord, WorkflowOrchestrator
from app.workflows.errors import RunNotFoundError, RunNotRetryableError
from app.workflows.jobs import execute_workflow_run, get_orchestrator

router = APIRouter(prefix="/workflows", tags=["workflows"])


async def _get_owned_run(orchestrator: WorkflowOrchestrator, *, run_id: UUID, user_id: int) -> RunRecord:
    run = await orchestrator.store.get_run(run_id)
    # Runs carry their owner in the payload; someone else's run looks the same as a missing one.
    if run is None or run.payload.get("userId") != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    return run


@router.get("/runs/{run_id}", response_model=RunPublic)
async def get_run(
    run_id: UUID,
    current_user: User = Depends(get_current_user),
) -> RunPublic:
    orchestrator = get_orchestrator()
    run = await _get_owned_run(orchestrator, run_id=run_id, user_id=current_user.id)
    steps = await orchestrator.store.list_steps(run_id)
    return RunPublic(
        id=run.id,
        name=run.name,
        status=run.status,
        attempts=run.attempts,
        error=run.error,
        payload=run.payload,
        steps=[StepPublic(name=s.name, status=s.status, attempts=s.attempts, error=s.error) for s in steps],
    )


@router.post("/runs/{run_id}/retry", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_run(
    run_id: UUID,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
) -> TriggerResponse:
    """Re-run a failed run from its first incomplete step."""
    orchestrator = get_orchestrator()
    await _get_owned_run(orchestrator, run_id=run_id, user_id=current_user.id)
    try:
        await orchestrator.reopen(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    except RunNotRetryableError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    background_tasks.add_task(execute_workflow_run, run_id)
    return TriggerResponse(run_id=run_id)
