"""Unit tests for JobQueue: admission, worker dispatch and terminal states.

Handlers are plain coroutines controlled by the tests; no CLI or git.
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from typing import Any

import httpx
import pytest

from codeflow.job_runtime.callbacks import SIGNATURE_HEADER, CallbackSender, sign_payload, verify_signature
from codeflow.job_runtime.errors import GitError, JobNotFinishedError, JobNotFoundError, ValidationError
from codeflow.job_runtime.execution.claude import ClaudeRunOptions, ClaudeRunResult
from codeflow.job_runtime.execution.pipeline import ClaudeCodePipeline
from codeflow.job_runtime.models.enums import JobStatus, JobType
from codeflow.job_runtime.models.job import Job
from codeflow.job_runtime.models.workspace import Workspace, utcnow
from codeflow.job_runtime.queue import CANCELLED_JOB_ERROR, ORPHANED_JOB_ERROR, JobQueue
from codeflow.job_runtime.registry import ExecutionRegistry
from codeflow.job_runtime.settings import CodeflowSettings
from codeflow.job_runtime.store.local import LocalJobStore, LocalWorkspaceStore


class GatedHandler:
    """Blocks every job until ``release`` is called; records execution order."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.started: list[str] = []
        self.running = 0
        self.max_running = 0

    async def __call__(self, job: Job) -> dict[str, Any]:
        self.started.append(job.payload["name"])
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await self.gate.wait()
        finally:
            self.running -= 1
        return {"name": job.payload["name"]}

    def release(self) -> None:
        self.gate.set()


@pytest.fixture
def job_store(tmp_path) -> LocalJobStore:
    return LocalJobStore(tmp_path)


def make_queue(store: LocalJobStore, handler, *, registry: ExecutionRegistry | None = None, **kwargs) -> JobQueue:
    return JobQueue(store, {JobType.CLAUDE_CODE: handler}, registry or ExecutionRegistry(), **kwargs)


async def test_immediate_execution_returns_result(job_store: LocalJobStore) -> None:
    async def handler(job: Job) -> dict[str, Any]:
        return {"echo": job.payload["name"]}

    queue = make_queue(job_store, handler)
    outcome = await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "a"})

    assert outcome.immediate is True
    assert outcome.result == {"echo": "a"}
    job = await queue.get_job(outcome.job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.started_at is not None
    assert job.completed_at is not None


async def test_immediate_failure_is_recorded_and_reraised(job_store: LocalJobStore) -> None:
    async def handler(job: Job) -> dict[str, Any]:
        msg = "Failed to push branch feature-x"
        raise GitError(msg)

    queue = make_queue(job_store, handler)
    with pytest.raises(GitError, match="feature-x"):
        await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "a"})

    [job] = await queue.list_jobs()
    assert job.status is JobStatus.FAILED
    assert job.error == "Failed to push branch feature-x"
    assert job.result is None


async def test_unexpected_exception_still_fails_job(job_store: LocalJobStore) -> None:
    async def handler(job: Job) -> dict[str, Any]:
        raise KeyError("boom")

    queue = make_queue(job_store, handler)
    with pytest.raises(KeyError):
        await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "a"})

    [job] = await queue.list_jobs()
    assert job.status is JobStatus.FAILED
    assert "boom" in job.error


async def test_unknown_job_type_is_rejected(job_store: LocalJobStore) -> None:
    queue = make_queue(job_store, GatedHandler())
    with pytest.raises(ValidationError):
        await queue.execute_or_queue(JobType.WORKSPACE_CLEANUP, {"workspaceId": "x"})


async def test_concurrency_cap_is_never_exceeded(job_store: LocalJobStore) -> None:
    handler = GatedHandler()
    registry = ExecutionRegistry()
    queue = make_queue(job_store, handler, registry=registry, max_concurrent=2)

    inline = [asyncio.create_task(queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": f"j{i}"})) for i in range(5)]
    # Let every admission run; two go inline, three are queued.
    queued = [t for t in await _settle(inline) if t is not None]
    assert len(queued) == 3
    assert registry.count(JobType.CLAUDE_CODE) == 2

    # A dispatch while the slots are full claims nothing.
    assert await queue.dispatch_pending() == []

    handler.release()
    await asyncio.gather(*inline)
    while await queue.list_jobs([JobStatus.PENDING, JobStatus.PROCESSING]):
        await queue.dispatch_pending()
        await queue.wait_for_idle()

    assert handler.max_running == 2
    assert {j.status for j in await queue.list_jobs()} == {JobStatus.COMPLETED}


async def _settle(tasks: list[asyncio.Task]) -> list[str | None]:
    """Yield until every task either finished (queued) or is blocked in the handler."""
    for _ in range(50):
        await asyncio.sleep(0.01)
    return [t.result().job_id if t.done() and not t.result().immediate else None for t in tasks]


async def test_pending_jobs_are_claimed_in_admission_order(job_store: LocalJobStore) -> None:
    handler = GatedHandler()
    handler.release()
    queue = make_queue(job_store, handler, max_concurrent=1)

    for name in ("first", "second", "third"):
        await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": name}, force_queue=True)

    for _ in range(3):
        await queue.dispatch_pending()
        await queue.wait_for_idle()

    assert handler.started == ["first", "second", "third"]


async def test_immediate_admission_yields_to_older_pending_jobs(job_store: LocalJobStore) -> None:
    handler = GatedHandler()
    handler.release()
    queue = make_queue(job_store, handler)

    await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "waiting"}, force_queue=True)
    outcome = await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "newcomer"})

    assert outcome.immediate is False


async def test_worker_runs_queued_jobs(job_store: LocalJobStore) -> None:
    handler = GatedHandler()
    handler.release()
    queue = make_queue(job_store, handler, poll_interval=0.01)

    outcome = await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "bg"}, force_queue=True)
    queue.start()
    try:
        for _ in range(200):
            job = await queue.get_job(outcome.job_id)
            if job.status.is_finished:
                break
            await asyncio.sleep(0.01)
    finally:
        await queue.stop()
        await queue.wait_for_idle()

    assert job.status is JobStatus.COMPLETED
    assert job.result == {"name": "bg"}


async def test_cancelled_job_is_recorded_as_failed(job_store: LocalJobStore) -> None:
    handler = GatedHandler()
    registry = ExecutionRegistry()
    queue = make_queue(job_store, handler, registry=registry)

    outcome = await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "slow"}, force_queue=True)
    await queue.dispatch_pending()
    await asyncio.sleep(0.01)

    assert registry.cancel_all() == 1
    await queue.wait_for_idle()

    job = await queue.get_job(outcome.job_id)
    assert job.status is JobStatus.FAILED
    assert job.error == CANCELLED_JOB_ERROR
    assert registry.active_count == 0


async def test_delete_guard(job_store: LocalJobStore) -> None:
    handler = GatedHandler()
    queue = make_queue(job_store, handler)
    outcome = await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "p"}, force_queue=True)

    with pytest.raises(JobNotFinishedError):
        await queue.delete_finished_job(outcome.job_id)
    with pytest.raises(JobNotFoundError):
        await queue.delete_finished_job("missing")

    handler.release()
    await queue.dispatch_pending()
    await queue.wait_for_idle()
    assert await queue.delete_finished_job(outcome.job_id) is JobStatus.COMPLETED
    with pytest.raises(JobNotFoundError):
        await queue.get_job(outcome.job_id)


async def test_initialize_recovers_orphaned_jobs(job_store: LocalJobStore) -> None:
    await job_store.save(
        Job(id="orphan", type=JobType.CLAUDE_CODE, payload={}, status=JobStatus.PROCESSING, sequence=4)
    )
    await job_store.save(Job(id="waiting", type=JobType.CLAUDE_CODE, payload={"name": "w"}, sequence=5))

    queue = make_queue(job_store, GatedHandler())
    assert await queue.initialize() == 1

    orphan = await queue.get_job("orphan")
    assert orphan.status is JobStatus.FAILED
    assert orphan.error == ORPHANED_JOB_ERROR
    assert (await queue.get_job("waiting")).status is JobStatus.PENDING

    # New admissions continue after the highest persisted sequence.
    outcome = await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "n"}, force_queue=True)
    assert (await queue.get_job(outcome.job_id)).sequence == 6


async def test_cleanup_old_jobs(job_store: LocalJobStore) -> None:
    old = utcnow() - timedelta(days=10)
    await job_store.save(
        Job(
            id="old",
            type=JobType.CLAUDE_CODE,
            payload={},
            status=JobStatus.COMPLETED,
            created_at=old,
            completed_at=old,
        )
    )
    await job_store.save(Job(id="fresh", type=JobType.CLAUDE_CODE, payload={}, status=JobStatus.FAILED))
    await job_store.save(Job(id="stale-pending", type=JobType.CLAUDE_CODE, payload={}, created_at=old))

    queue = make_queue(job_store, GatedHandler(), retention_days=7)
    assert await queue.cleanup_old_jobs() == 1
    assert {j.id for j in await queue.list_jobs()} == {"fresh", "stale-pending"}


async def test_queue_status_counts(job_store: LocalJobStore) -> None:
    handler = GatedHandler()
    queue = make_queue(job_store, handler, max_concurrent=1)
    running = asyncio.create_task(queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "a"}))
    await asyncio.sleep(0.05)
    await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "b"})

    status = await queue.queue_status()
    assert status["is_processing"] is True
    assert status["has_pending"] is True
    assert status["counts"] == {"pending": 1, "processing": 1, "completed": 0, "failed": 0}

    handler.release()
    await running


# ---------------------------------------------------------------------------
# Completion callbacks
# ---------------------------------------------------------------------------


async def test_callback_is_signed(job_store: LocalJobStore) -> None:
    received: list[httpx.Request] = []

    def _handle(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handle)) as http:

        async def handler(job: Job) -> dict[str, Any]:
            return {"output": "done"}

        queue = make_queue(job_store, handler, callbacks=CallbackSender(http))
        callback = {"url": "https://hooks.example.com/codeflow", "secret": "s3cret"}
        outcome = await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "a", "callback": callback})
        await queue.wait_for_idle()

    [request] = received
    body = request.content
    assert request.headers[SIGNATURE_HEADER] == sign_payload(body, "s3cret")
    assert verify_signature(body, "s3cret", request.headers[SIGNATURE_HEADER])
    assert request.headers["x-workflow-job-status"] == "completed"
    payload = json.loads(body)
    assert payload["jobId"] == outcome.job_id
    assert payload["result"] == {"output": "done"}


async def test_callback_failure_does_not_change_job(job_store: LocalJobStore) -> None:
    def _handle(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handle)) as http:

        async def handler(job: Job) -> dict[str, Any]:
            return {"output": "done"}

        queue = make_queue(job_store, handler, callbacks=CallbackSender(http))
        outcome = await queue.execute_or_queue(
            JobType.CLAUDE_CODE, {"name": "a", "callback": {"url": "https://hooks.example.com/x"}}
        )
        await queue.wait_for_idle()

    job = await queue.get_job(outcome.job_id)
    assert job.status is JobStatus.COMPLETED


def test_signature_rejects_tampering() -> None:
    signature = sign_payload(b'{"a": 1}', "secret")
    assert signature.startswith("sha256=")
    assert not verify_signature(b'{"a": 2}', "secret", signature)
    assert not verify_signature(b'{"a": 1}', "other", signature)


async def test_slow_callback_does_not_hold_the_slot(job_store: LocalJobStore) -> None:
    release = asyncio.Event()
    delivered: list[str] = []

    async def _handle(request: httpx.Request) -> httpx.Response:
        await release.wait()
        delivered.append(request.headers["x-workflow-job-id"])
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handle)) as http:

        async def handler(job: Job) -> dict[str, Any]:
            return {"output": "done"}

        registry = ExecutionRegistry()
        queue = make_queue(job_store, handler, registry=registry, max_concurrent=1, callbacks=CallbackSender(http))
        callback = {"url": "https://hooks.example.com/slow"}
        first = await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "a", "callback": callback})

        assert first.immediate is True
        assert registry.active_count == 0
        second = await queue.execute_or_queue(JobType.CLAUDE_CODE, {"name": "b"})
        assert second.immediate is True
        assert delivered == []

        release.set()
        await queue.wait_for_idle()

    assert delivered == [first.job_id]


# ---------------------------------------------------------------------------
# Per-workspace serialisation
# ---------------------------------------------------------------------------


class GatedRunner:
    """Fake Claude CLI: each question blocks until its gate is opened."""

    def __init__(self) -> None:
        self.gates: dict[str, asyncio.Event] = {}
        self.active: set[str] = set()
        self.events: list[str] = []

    def gate(self, question: str) -> asyncio.Event:
        return self.gates.setdefault(question, asyncio.Event())

    async def __call__(self, options: ClaudeRunOptions, _settings: CodeflowSettings) -> ClaudeRunResult:
        self.events.append(f"start:{options.question}")
        self.active.add(options.question)
        try:
            await self.gate(options.question).wait()
        finally:
            self.active.discard(options.question)
        self.events.append(f"end:{options.question}")
        return ClaudeRunResult(output=options.question, raw_output="", execution_time_ms=1)


async def _wait_until(predicate) -> None:
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


async def test_jobs_on_one_workspace_never_overlap(
    job_store: LocalJobStore, settings: CodeflowSettings, tmp_path
) -> None:
    workspaces = LocalWorkspaceStore(tmp_path / "data")
    for workspace_id in ("ws-a", "ws-b"):
        path = tmp_path / workspace_id
        path.mkdir()
        repo_url = f"https://gitlab.com/acme/{workspace_id}.git"
        await workspaces.save(Workspace(id=workspace_id, path=str(path), repo_url=repo_url))

    registry = ExecutionRegistry()
    runner = GatedRunner()
    pipeline = ClaudeCodePipeline(settings=settings, workspaces=workspaces, registry=registry, runner=runner)
    queue = make_queue(job_store, pipeline, registry=registry, max_concurrent=3)

    def _payload(workspace_id: str, question: str) -> dict[str, Any]:
        return {
            "workspaceId": workspace_id,
            "workspacePath": str(tmp_path / workspace_id),
            "question": question,
            "repoUrl": f"https://gitlab.com/acme/{workspace_id}.git",
        }

    for workspace_id, question in (("ws-a", "a1"), ("ws-a", "a2"), ("ws-b", "b1")):
        await queue.execute_or_queue(JobType.CLAUDE_CODE, _payload(workspace_id, question), force_queue=True)
    assert len(await queue.dispatch_pending()) == 3

    # Different workspaces overlap; the second job on ws-a waits for the lock.
    await _wait_until(lambda: runner.active == {"a1", "b1"})
    await asyncio.sleep(0.05)
    assert "start:a2" not in runner.events
    assert registry.active_count == 3

    runner.gate("a1").set()
    await _wait_until(lambda: "start:a2" in runner.events)
    assert runner.events.index("end:a1") < runner.events.index("start:a2")

    runner.gate("a2").set()
    runner.gate("b1").set()
    await queue.wait_for_idle()
    assert {j.status for j in await queue.list_jobs()} == {JobStatus.COMPLETED}
