from __future__ import annotations

import json
from typing import Any, Sequence
from uuid import UUID, uuid4

import pytest

import app.workflows.steps as steps
from app.workflows.engine import (
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_PENDING,
    STEP_COMPLETED,
    STEP_FAILED,
    STEP_RUNNING,
    RunRecord,
    StepRecord,
    WorkflowContext,
    WorkflowOrchestrator,
)
from app.workflows.errors import (
    EmptyTranscriptError,
    InvalidPayloadError,
    RunNotFoundError,
    RunNotRetryableError,
    UnknownWorkflowError,
    UpstreamError,
)
from app.workflows.jobs import JOBS, WORKFLOW_DESCRIPTION, WORKFLOW_THUMBNAIL, WORKFLOW_TITLE


class InMemoryRunStore:
    """Same contract as SqlRunStore; outputs go through JSON like the JSONB column."""

    def __init__(self) -> None:
        self.runs: dict[UUID, RunRecord] = {}
        self.steps: dict[tuple[UUID, str], StepRecord] = {}

    async def create_run(self, name: str, payload: dict[str, Any]) -> UUID:
        run_id = uuid4()
        self.runs[run_id] = RunRecord(id=run_id, name=name, payload=json.loads(json.dumps(payload)), status=RUN_PENDING)
        return run_id

    async def get_run(self, run_id: UUID) -> RunRecord | None:
        return self.runs.get(run_id)

    async def set_run_status(
        self, run_id: UUID, status: str, *, error: str | None = None, count_attempt: bool = False
    ) -> None:
        r = self.runs[run_id]
        self.runs[run_id] = RunRecord(
            id=r.id,
            name=r.name,
            payload=r.payload,
            status=status,
            error=error,
            attempts=r.attempts + (1 if count_attempt else 0),
        )

    async def list_runs(self, statuses: Sequence[str]) -> list[UUID]:
        return [r.id for r in self.runs.values() if r.status in statuses]

    async def get_step(self, run_id: UUID, name: str) -> StepRecord | None:
        return self.steps.get((run_id, name))

    async def list_steps(self, run_id: UUID) -> list[StepRecord]:
        return [s for (rid, _), s in self.steps.items() if rid == run_id]

    async def start_step(self, run_id: UUID, name: str, input_hash: str) -> None:
        prev = self.steps.get((run_id, name))
        self.steps[(run_id, name)] = StepRecord(
            name=name,
            input_hash=input_hash,
            status=STEP_RUNNING,
            attempts=(prev.attempts if prev else 0) + 1,
        )

    async def complete_step(self, run_id: UUID, name: str, output: Any) -> None:
        s = self.steps[(run_id, name)]
        self.steps[(run_id, name)] = StepRecord(
            name=name,
            input_hash=s.input_hash,
            status=STEP_COMPLETED,
            output=json.loads(json.dumps(output)),
            attempts=s.attempts,
        )

    async def fail_step(self, run_id: UUID, name: str, error: str) -> None:
        s = self.steps[(run_id, name)]
        self.steps[(run_id, name)] = StepRecord(
            name=name, input_hash=s.input_hash, status=STEP_FAILED, attempts=s.attempts, error=error
        )


class FakeSteps:
    """Records calls to the side-effecting steps."""

    def __init__(self, *, transcript: str = "hello world, this is a video about bread") -> None:
        self.transcript = transcript
        self.calls: dict[str, int] = {}
        self.saved: list[dict[str, Any]] = []
        self.title_failures = 0

    def _hit(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    def install(self, monkeypatch) -> None:
        async def load_video(*, video_id: UUID, owner_id: int) -> dict:
            self._hit("load_video")
            return {"id": str(video_id), "ownerId": owner_id, "playbackId": "pb_1", "trackId": "tr_1"}

        async def fetch_transcript(*, playback_id, track_id) -> str:
            self._hit("fetch_transcript")
            if not self.transcript:
                raise EmptyTranscriptError("Transcript is empty")
            return self.transcript

        async def generate_title(transcript: str) -> str:
            self._hit("generate_title")
            if self.title_failures > 0:
                self.title_failures -= 1
                raise UpstreamError("model unavailable")
            return "Baking Bread At Home"

        async def generate_description(transcript: str) -> str:
            self._hit("generate_description")
            return "A short video about bread."

        async def save_video_fields(*, video_id: UUID, owner_id: int, values: dict) -> None:
            self._hit("save_video_fields")
            self.saved.append(values)

        monkeypatch.setattr(steps, "load_video", load_video)
        monkeypatch.setattr(steps, "fetch_transcript", fetch_transcript)
        monkeypatch.setattr(steps, "generate_title", generate_title)
        monkeypatch.setattr(steps, "generate_description", generate_description)
        monkeypatch.setattr(steps, "save_video_fields", save_video_fields)


def _payload(video_id: UUID) -> dict:
    return {"userId": 7, "videoId": str(video_id)}


@pytest.mark.asyncio
async def test_title_workflow_writes_generated_title(monkeypatch) -> None:
    video_id = uuid4()
    fake = FakeSteps()
    fake.install(monkeypatch)
    store = InMemoryRunStore()
    orchestrator = WorkflowOrchestrator(store, JOBS)

    run_id = await orchestrator.trigger(WORKFLOW_TITLE, _payload(video_id))
    assert store.runs[run_id].status == RUN_PENDING

    run = await orchestrator.execute(run_id)

    assert run.status == RUN_COMPLETED
    assert fake.saved == [{"title": "Baking Bread At Home"}]
    assert [s.name for s in await store.list_steps(run_id)] == [
        "get-video",
        "get-transcript",
        "generate-title",
        "update-video",
    ]


@pytest.mark.asyncio
async def test_description_workflow_writes_generated_description(monkeypatch) -> None:
    video_id = uuid4()
    fake = FakeSteps()
    fake.install(monkeypatch)
    orchestrator = WorkflowOrchestrator(InMemoryRunStore(), JOBS)

    run = await orchestrator.execute(await orchestrator.trigger(WORKFLOW_DESCRIPTION, _payload(video_id)))

    assert run.status == RUN_COMPLETED
    assert fake.saved == [{"description": "A short video about bread."}]


@pytest.mark.asyncio
async def test_empty_transcript_short_circuits_the_run(monkeypatch) -> None:
    video_id = uuid4()
    fake = FakeSteps(transcript="")
    fake.install(monkeypatch)
    store = InMemoryRunStore()
    orchestrator = WorkflowOrchestrator(store, JOBS)

    run_id = await orchestrator.trigger(WORKFLOW_TITLE, _payload(video_id))
    run = await orchestrator.execute(run_id)

    assert run.status == RUN_FAILED
    assert "get-transcript" in (run.error or "")
    assert "generate_title" not in fake.calls
    assert fake.saved == []
    assert store.steps[(run_id, "get-transcript")].status == STEP_FAILED


@pytest.mark.asyncio
async def test_retry_skips_completed_steps(monkeypatch) -> None:
    video_id = uuid4()
    fake = FakeSteps()
    fake.title_failures = 1
    fake.install(monkeypatch)
    store = InMemoryRunStore()
    orchestrator = WorkflowOrchestrator(store, JOBS)

    run_id = await orchestrator.trigger(WORKFLOW_TITLE, _payload(video_id))
    first = await orchestrator.execute(run_id)
    assert first.status == RUN_FAILED
    assert fake.saved == []

    second = await orchestrator.retry(run_id)

    assert second.status == RUN_COMPLETED
    assert second.attempts == 2
    assert fake.calls["load_video"] == 1
    assert fake.calls["fetch_transcript"] == 1
    assert fake.calls["generate_title"] == 2
    assert fake.saved == [{"title": "Baking Bread At Home"}]


@pytest.mark.asyncio
async def test_completed_run_is_not_executed_again(monkeypatch) -> None:
    video_id = uuid4()
    fake = FakeSteps()
    fake.install(monkeypatch)
    orchestrator = WorkflowOrchestrator(InMemoryRunStore(), JOBS)

    run_id = await orchestrator.trigger(WORKFLOW_TITLE, _payload(video_id))
    await orchestrator.execute(run_id)
    await orchestrator.execute(run_id)

    assert fake.calls["save_video_fields"] == 1


@pytest.mark.asyncio
async def test_only_failed_runs_can_be_retried(monkeypatch) -> None:
    video_id = uuid4()
    FakeSteps().install(monkeypatch)
    orchestrator = WorkflowOrchestrator(InMemoryRunStore(), JOBS)

    run_id = await orchestrator.trigger(WORKFLOW_TITLE, _payload(video_id))
    with pytest.raises(RunNotRetryableError):
        await orchestrator.retry(run_id)


@pytest.mark.asyncio
async def test_unknown_workflow_or_bad_payload_creates_no_run() -> None:
    store = InMemoryRunStore()
    orchestrator = WorkflowOrchestrator(store, JOBS)

    with pytest.raises(UnknownWorkflowError):
        await orchestrator.trigger("chapters", _payload(uuid4()))
    with pytest.raises(InvalidPayloadError):
        await orchestrator.trigger(WORKFLOW_TITLE, {"userId": 7})
    with pytest.raises(InvalidPayloadError):
        # Thumbnail runs need a prompt.
        await orchestrator.trigger(WORKFLOW_THUMBNAIL, _payload(uuid4()))

    assert store.runs == {}


@pytest.mark.asyncio
async def test_resume_incomplete_executes_interrupted_runs(monkeypatch) -> None:
    video_id = uuid4()
    fake = FakeSteps()
    fake.install(monkeypatch)
    store = InMemoryRunStore()
    orchestrator = WorkflowOrchestrator(store, JOBS)

    pending = await orchestrator.trigger(WORKFLOW_TITLE, _payload(video_id))
    crashed = await orchestrator.trigger(WORKFLOW_DESCRIPTION, _payload(video_id))
    await store.set_run_status(crashed, "running")

    resumed = await orchestrator.resume_incomplete()

    assert set(resumed) == {pending, crashed}
    assert store.runs[pending].status == RUN_COMPLETED
    assert store.runs[crashed].status == RUN_COMPLETED


@pytest.mark.asyncio
async def test_thumbnail_workflow_runs_steps_in_order(monkeypatch) -> None:
    video_id = uuid4()
    order: list[str] = []

    async def load_video(*, video_id, owner_id):
        order.append("load")
        return {"id": str(video_id), "ownerId": owner_id, "playbackId": "pb_1", "trackId": None}

    async def clear_thumbnail(*, video_id, owner_id):
        order.append("clear")

    async def generate_thumbnail(prompt: str) -> str:
        order.append("generate")
        assert prompt == "a loaf of bread"
        return "https://images.example.test/tmp/1.png"

    async def upload_thumbnail(*, video_id, image_url):
        order.append("upload")
        return {"key": f"videos/{video_id}/thumbnail/abc.png", "url": "https://cdn.example.test/abc.png"}

    async def set_thumbnail(*, video_id, owner_id, key):
        order.append(f"set:{key}")

    monkeypatch.setattr(steps, "load_video", load_video)
    monkeypatch.setattr(steps, "clear_thumbnail", clear_thumbnail)
    monkeypatch.setattr(steps, "generate_thumbnail", generate_thumbnail)
    monkeypatch.setattr(steps, "upload_thumbnail", upload_thumbnail)
    monkeypatch.setattr(steps, "set_thumbnail", set_thumbnail)

    orchestrator = WorkflowOrchestrator(InMemoryRunStore(), JOBS)
    run_id = await orchestrator.trigger(
        WORKFLOW_THUMBNAIL, {"userId": 7, "videoId": str(video_id), "prompt": "  a loaf of bread "}
    )
    run = await orchestrator.execute(run_id)

    assert run.status == RUN_COMPLETED
    assert order == ["load", "clear", "generate", "upload", f"set:videos/{video_id}/thumbnail/abc.png"]


@pytest.mark.asyncio
async def test_changed_step_input_re_executes_step() -> None:
    store = InMemoryRunStore()
    run_id = await store.create_run("x", {})
    calls = {"n": 0}

    async def work():
        calls["n"] += 1
        return calls["n"]

    ctx = WorkflowContext(store, run_id)
    assert await ctx.run("step", work, input={"a": 1}) == 1
    assert await ctx.run("step", work, input={"a": 1}) == 1
    assert await ctx.run("step", work, input={"a": 2}) == 2


@pytest.mark.asyncio
async def test_run_removed_during_execution_raises_not_found(monkeypatch) -> None:
    fake = FakeSteps()
    fake.install(monkeypatch)
    store = InMemoryRunStore()
    orchestrator = WorkflowOrchestrator(store, JOBS)
    run_id = await orchestrator.trigger(WORKFLOW_TITLE, _payload(uuid4()))

    async def save_and_drop_run(*, video_id, owner_id, values) -> None:
        store.runs.pop(run_id)

    monkeypatch.setattr(steps, "save_video_fields", save_and_drop_run)
    real_set_status = store.set_run_status

    async def set_status_if_present(run_id_, status, **kwargs) -> None:
        if run_id_ in store.runs:
            await real_set_status(run_id_, status, **kwargs)

    store.set_run_status = set_status_if_present

    with pytest.raises(RunNotFoundError):
        await orchestrator.execute(run_id)
