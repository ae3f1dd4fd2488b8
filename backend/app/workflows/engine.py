from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol, Sequence, TypeVar
from uuid import UUID

from pydantic import BaseModel, ValidationError
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging import get_logger
from app.db.models.workflow import WorkflowRun, WorkflowStep
from app.workflows.errors import (
    InvalidPayloadError,
    RunNotFoundError,
    RunNotRetryableError,
    StepFailedError,
    UnknownWorkflowError,
)

logger = get_logger(__name__)

T = TypeVar("T")

RUN_PENDING = "pending"
RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"

STEP_RUNNING = "running"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"

MAX_ERROR_CHARS = 2000


def input_hash(value: Any) -> str:
    """Stable digest of a step's input; a changed input re-executes a completed step."""
    raw = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class RunRecord:
    id: UUID
    name: str
    payload: dict[str, Any]
    status: str
    error: str | None = None
    attempts: int = 0


@dataclass(frozen=True)
class StepRecord:
    name: str
    input_hash: str
    status: str
    output: Any = None
    attempts: int = 0
    error: str | None = None


class RunStore(Protocol):
    async def create_run(self, name: str, payload: dict[str, Any]) -> UUID: ...

    async def get_run(self, run_id: UUID) -> RunRecord | None: ...

    async def set_run_status(
        self, run_id: UUID, status: str, *, error: str | None = None, count_attempt: bool = False
    ) -> None: ...

    async def list_runs(self, statuses: Sequence[str]) -> list[UUID]: ...

    async def get_step(self, run_id: UUID, name: str) -> StepRecord | None: ...

    async def list_steps(self, run_id: UUID) -> list[StepRecord]: ...

    async def start_step(self, run_id: UUID, name: str, input_hash: str) -> None: ...

    async def complete_step(self, run_id: UUID, name: str, output: Any) -> None: ...

    async def fail_step(self, run_id: UUID, name: str, error: str) -> None: ...


def _to_run(row: WorkflowRun) -> RunRecord:
    return RunRecord(
        id=row.id,
        name=row.name,
        payload=dict(row.payload or {}),
        status=row.status,
        error=row.error,
        attempts=int(row.attempts or 0),
    )


def _to_step(row: WorkflowStep) -> StepRecord:
    return StepRecord(
        name=row.name,
        input_hash=row.input_hash,
        status=row.status,
        output=(row.output or {}).get("value"),
        attempts=int(row.attempts or 0),
        error=row.error,
    )


class SqlRunStore:
    """Run and step log in Postgres. Every call is its own short transaction."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def create_run(self, name: str, payload: dict[str, Any]) -> UUID:
        async with self._session_maker() as db:
            run = WorkflowRun(name=name, payload=payload, status=RUN_PENDING, attempts=0)
            db.add(run)
            await db.commit()
            return run.id

    async def get_run(self, run_id: UUID) -> RunRecord | None:
        async with self._session_maker() as db:
            row = await db.get(WorkflowRun, run_id)
            return _to_run(row) if row is not None else None

    async def set_run_status(
        self, run_id: UUID, status: str, *, error: str | None = None, count_attempt: bool = False
    ) -> None:
        values: dict[str, Any] = {"status": status, "error": error}
        if count_attempt:
            values["attempts"] = WorkflowRun.attempts + 1
        values["finished_at"] = (
            datetime.now(timezone.utc) if status in {RUN_COMPLETED, RUN_FAILED} else None
        )
        async with self._session_maker() as db:
            await db.execute(update(WorkflowRun).where(WorkflowRun.id == run_id).values(**values))
            await db.commit()

    async def list_runs(self, statuses: Sequence[str]) -> list[UUID]:
        async with self._session_maker() as db:
            res = await db.execute(
                select(WorkflowRun.id)
                .where(WorkflowRun.status.in_(list(statuses)))
                .order_by(WorkflowRun.created_at.asc())
            )
            return list(res.scalars().all())

    async def get_step(self, run_id: UUID, name: str) -> StepRecord | None:
        async with self._session_maker() as db:
            res = await db.execute(
                select(WorkflowStep).where(WorkflowStep.run_id == run_id, WorkflowStep.name == name)
            )
            row = res.scalar_one_or_none()
            return _to_step(row) if row is not None else None

    async def list_steps(self, run_id: UUID) -> list[StepRecord]:
        async with self._session_maker() as db:
            res = await db.execute(
                select(WorkflowStep).where(WorkflowStep.run_id == run_id).order_by(WorkflowStep.created_at.asc())
            )
            return [_to_step(r) for r in res.scalars().all()]

    async def start_step(self, run_id: UUID, name: str, input_hash: str) -> None:
        stmt = pg_insert(WorkflowStep).values(
            run_id=run_id,
            name=name,
            input_hash=input_hash,
            status=STEP_RUNNING,
            attempts=1,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_workflow_steps_run_id_name",
            set_={
                "input_hash": input_hash,
                "status": STEP_RUNNING,
                "attempts": WorkflowStep.attempts + 1,
                "output": None,
                "error": None,
            },
        )
        async with self._session_maker() as db:
            await db.execute(stmt)
            await db.commit()

    async def complete_step(self, run_id: UUID, name: str, output: Any) -> None:
        async with self._session_maker() as db:
            await db.execute(
                update(WorkflowStep)
                .where(WorkflowStep.run_id == run_id, WorkflowStep.name == name)
                .values(status=STEP_COMPLETED, output={"value": output}, error=None)
            )
            await db.commit()

    async def fail_step(self, run_id: UUID, name: str, error: str) -> None:
        async with self._session_maker() as db:
            await db.execute(
                update(WorkflowStep)
                .where(WorkflowStep.run_id == run_id, WorkflowStep.name == name)
                .values(status=STEP_FAILED, output=None, error=error[:MAX_ERROR_CHARS])
            )
            await db.commit()


class WorkflowContext:
    """Handed to a job; `run` is the only way a job should touch the outside world."""

    def __init__(self, store: RunStore, run_id: UUID):
        self._store = store
        self.run_id = run_id

    async def run(self, step: str, fn: Callable[[], Awaitable[T]], input: Any = None) -> T:
        """
        Execute `fn` once per (run, step, input).

        A completed step with the same input hash returns its recorded output
        without calling `fn`. Outputs must be JSON-serializable. A raised
        exception is recorded on the step and re-raised as StepFailedError.
        """
        digest = input_hash(input)
        recorded = await self._store.get_step(self.run_id, step)
        if recorded is not None and recorded.status == STEP_COMPLETED and recorded.input_hash == digest:
            logger.debug("workflow_step_skipped", run_id=str(self.run_id), step=step)
            return recorded.output

        await self._store.start_step(self.run_id, step, digest)
        try:
            output = await fn()
        except Exception as e:
            await self._store.fail_step(self.run_id, step, f"{type(e).__name__}: {e}")
            raise StepFailedError(step, e) from e

        await self._store.complete_step(self.run_id, step, output)
        logger.info("workflow_step_completed", run_id=str(self.run_id), step=step)
        return output


@dataclass(frozen=True)
class Job:
    name: str
    payload_model: type[BaseModel]
    handler: Callable[[WorkflowContext, Any], Awaitable[None]]


class WorkflowOrchestrator:
    def __init__(self, store: RunStore, jobs: dict[str, Job]):
        self._store = store
        self._jobs = dict(jobs)

    @property
    def store(self) -> RunStore:
        return self._store

    def job(self, name: str) -> Job:
        job = self._jobs.get(name)
        if job is None:
            raise UnknownWorkflowError(f"Unknown workflow: {name}")
        return job

    def validate(self, name: str, payload: dict[str, Any]) -> BaseModel:
        job = self.job(name)
        try:
            return job.payload_model.model_validate(payload)
        except ValidationError as e:
            raise InvalidPayloadError(str(e)) from e

    async def trigger(self, name: str, payload: dict[str, Any]) -> UUID:
        """Record a pending run. The caller schedules `execute` out of band."""
        model = self.validate(name, payload)
        run_id = await self._store.create_run(name, model.model_dump(mode="json", by_alias=True))
        logger.info("workflow_triggered", run_id=str(run_id), workflow=name)
        return run_id

    async def execute(self, run_id: UUID) -> RunRecord:
        run = await self._store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(str(run_id))
        if run.status == RUN_COMPLETED:
            return run

        log = logger.bind(run_id=str(run_id), workflow=run.name)
        job = self.job(run.name)
        await self._store.set_run_status(run_id, RUN_RUNNING, count_attempt=True)
        try:
            payload = job.payload_model.model_validate(run.payload)
            await job.handler(WorkflowContext(self._store, run_id), payload)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"[:MAX_ERROR_CHARS]
            await self._store.set_run_status(run_id, RUN_FAILED, error=error)
            log.warning("workflow_failed", error=error)
        else:
            await self._store.set_run_status(run_id, RUN_COMPLETED)
            log.info("workflow_completed")

        run = await self._store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(str(run_id))
        return run

    async def reopen(self, run_id: UUID) -> RunRecord:
        """Move a failed run back to pending so `execute` picks it up again."""
        run = await self._store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(str(run_id))
        if run.status != RUN_FAILED:
            raise RunNotRetryableError(f"Run is {run.status}, only failed runs can be retried")
        await self._store.set_run_status(run_id, RUN_PENDING)
        return RunRecord(
            id=run.id, name=run.name, payload=run.payload, status=RUN_PENDING, attempts=run.attempts
        )

    async def retry(self, run_id: UUID) -> RunRecord:
        """Re-execute a failed run; completed steps are not repeated."""
        await self.reopen(run_id)
        return await self.execute(run_id)

    async def resume_incomplete(self) -> list[UUID]:
        """Re-execute runs left pending or running by a previous process."""
        run_ids = await self._store.list_runs([RUN_PENDING, RUN_RUNNING])
        for run_id in run_ids:
            try:
                await self.execute(run_id)
            except Exception:
                logger.exception("workflow_resume_failed", run_id=str(run_id))
        if run_ids:
            logger.info("workflows_resumed", count=len(run_ids))
        return run_ids
