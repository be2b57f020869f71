"""Shared fixtures for job-runtime tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from codeflow.job_runtime.app import app
from codeflow.job_runtime.auth import ApiKeyStore, RateLimiter
from codeflow.job_runtime.execution.claude import ClaudeRunOptions, ClaudeRunResult
from codeflow.job_runtime.execution.pipeline import ClaudeCodePipeline, WorkspaceCleanupPipeline
from codeflow.job_runtime.models.enums import JobType
from codeflow.job_runtime.models.job import ClaudeUsage
from codeflow.job_runtime.models.workspace import Workspace
from codeflow.job_runtime.queue import JobQueue
from codeflow.job_runtime.registry import ExecutionRegistry
from codeflow.job_runtime.settings import CodeflowSettings
from codeflow.job_runtime.store.local import LocalJobStore, LocalWorkspaceStore

API_KEY = "test-token"


async def fake_runner(options: ClaudeRunOptions, _settings: CodeflowSettings) -> ClaudeRunResult:
    """Stands in for the Claude CLI: echoes the question."""
    return ClaudeRunResult(
        output=f"answer: {options.question}",
        raw_output='{"type": "result"}',
        json_logs=[{"type": "result", "subtype": "success"}],
        execution_time_ms=7,
        usage=ClaudeUsage(input_tokens=3, output_tokens=5),
        subtype="success",
    )


@pytest.fixture
def registry() -> ExecutionRegistry:
    return ExecutionRegistry()


@pytest.fixture
def workspace_store(settings: CodeflowSettings) -> LocalWorkspaceStore:
    return LocalWorkspaceStore(settings.data_root)


@pytest.fixture
def job_store(settings: CodeflowSettings) -> LocalJobStore:
    return LocalJobStore(settings.data_root)


@pytest.fixture
async def workspace(workspace_store: LocalWorkspaceStore, tmp_path: Path) -> Workspace:
    """A registered workspace whose directory exists (no git needed for ask)."""
    path = tmp_path / "ws"
    path.mkdir()
    ws = Workspace(id="ws-1", path=str(path), repo_url="https://gitlab.com/acme/demo.git", target_branch="main")
    await workspace_store.save(ws)
    return ws


@pytest.fixture
def queue(
    settings: CodeflowSettings,
    workspace_store: LocalWorkspaceStore,
    job_store: LocalJobStore,
    registry: ExecutionRegistry,
) -> JobQueue:
    """Queue with the real handlers and a fake Claude runner.  Worker not started."""
    handlers = {
        JobType.CLAUDE_CODE: ClaudeCodePipeline(
            settings=settings,
            workspaces=workspace_store,
            registry=registry,
            runner=fake_runner,
        ),
        JobType.WORKSPACE_CLEANUP: WorkspaceCleanupPipeline(workspaces=workspace_store, registry=registry),
    }
    return JobQueue(job_store, handlers, registry, max_concurrent=2, poll_interval=0.05)


@pytest.fixture
async def client(
    settings: CodeflowSettings,
    workspace_store: LocalWorkspaceStore,
    registry: ExecutionRegistry,
    queue: JobQueue,
) -> AsyncIterator[AsyncClient]:
    """Async HTTP client wired to the app.

    The app lifespan does NOT run under ``ASGITransport``, so state fields
    are pre-set here.  Requests are authenticated with ``API_KEY``.
    """
    app.state.settings = settings
    app.state.api_keys = ApiKeyStore(Path(settings.data_root) / "api-keys.json", extra_keys=[API_KEY])
    app.state.rate_limiter = RateLimiter(1000, 3600)
    app.state.workspaces = workspace_store
    app.state.registry = registry
    app.state.queue = queue

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers={"x-api-key": API_KEY}) as ac:
        yield ac

    for name in ("settings", "api_keys", "rate_limiter", "workspaces", "registry", "queue"):
        setattr(app.state, name, None)
