"""Job handlers: what the queue runs for each job type.

A handler takes a ``Job`` in ``processing`` state and returns the JSON result
to store on it, or raises.  The queue owns every state transition; handlers
never touch the job store.

``ClaudeCodePipeline`` holds the workspace lock for the whole
branch-init -> CLI run -> commit sequence, so two jobs on the same workspace
never interleave on its working tree.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from functools import partial
from typing import TYPE_CHECKING, Any

from codeflow.job_runtime.errors import WorkspaceNotFoundError
from codeflow.job_runtime.execution.claude import ClaudeRunOptions, ClaudeRunResult, run_claude_code
from codeflow.job_runtime.execution.post_execution import commit_and_maybe_open_request
from codeflow.job_runtime.execution.workflow import initialize_git_workflow
from codeflow.job_runtime.git.commands import GitRepository
from codeflow.job_runtime.managers.workspaces import remove_workspace
from codeflow.job_runtime.models.job import ClaudeCodeJobPayload, ClaudeCodeJobResult, Job, WorkspaceCleanupPayload

if TYPE_CHECKING:
    from codeflow.job_runtime.git.providers import MergeRequestClient
    from codeflow.job_runtime.registry import ExecutionRegistry
    from codeflow.job_runtime.settings import CodeflowSettings
    from codeflow.job_runtime.store.base import WorkspaceStore

logger = logging.getLogger(__name__)

ClaudeRunner = Callable[[ClaudeRunOptions, "CodeflowSettings"], Awaitable[ClaudeRunResult]]


class ClaudeCodePipeline:
    """Handler for ``claude-code`` jobs."""

    def __init__(
        self,
        *,
        settings: CodeflowSettings,
        workspaces: WorkspaceStore,
        registry: ExecutionRegistry,
        merge_requests: MergeRequestClient | None = None,
        git_factory: Callable[[str], GitRepository] | None = None,
        runner: ClaudeRunner = run_claude_code,
    ) -> None:
        self._settings = settings
        self._workspaces = workspaces
        self._registry = registry
        self._merge_requests = merge_requests
        self._git_factory = git_factory or partial(GitRepository, timeout=settings.git_timeout_seconds)
        self._runner = runner

    async def __call__(self, job: Job) -> dict[str, Any]:
        payload = ClaudeCodeJobPayload.model_validate(job.payload)
        async with self._registry.workspace_lock(payload.workspace_id):
            result = await self.execute(payload)
        return result.to_json()

    async def execute(self, payload: ClaudeCodeJobPayload) -> ClaudeCodeJobResult:
        workflow = None
        if payload.edit_request:
            workflow = await initialize_git_workflow(
                self._workspaces,
                payload.workspace_id,
                payload.source_branch,
                git_factory=self._git_factory,
                task_id=payload.task_id,
                new_branch_name=payload.new_branch_name,
                create_mr=payload.create_mr,
            )

        workspace = await self._workspaces.get(payload.workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(payload.workspace_id)

        run = await self._runner(
            ClaudeRunOptions(
                working_directory=workspace.path,
                question=payload.question,
                context=payload.context,
                source_branch=workflow.source_branch if workflow else payload.source_branch,
                edit_request=payload.edit_request,
            ),
            self._settings,
        )

        post_execution = None
        if workflow is not None and workspace.repo_url:
            post_execution = await commit_and_maybe_open_request(
                workspace,
                workflow,
                payload.question,
                git=self._git_factory(workspace.path),
                merge_requests=self._merge_requests,
            )

        return ClaudeCodeJobResult(
            output=run.output,
            execution_time_ms=run.execution_time_ms,
            json_logs=run.json_logs,
            raw_output=run.raw_output,
            usage=run.usage,
            git_workflow=workflow,
            post_execution=post_execution,
        )


class WorkspaceCleanupPipeline:
    """Handler for ``workspace-cleanup`` jobs: delete directory and record."""

    def __init__(self, *, workspaces: WorkspaceStore, registry: ExecutionRegistry) -> None:
        self._workspaces = workspaces
        self._registry = registry

    async def __call__(self, job: Job) -> dict[str, Any]:
        payload = WorkspaceCleanupPayload.model_validate(job.payload)
        start = time.monotonic()
        async with self._registry.workspace_lock(payload.workspace_id):
            await remove_workspace(self._workspaces, payload.workspace_id)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info("Workspace %s removed in %sms", payload.workspace_id, elapsed_ms)
        return {"workspaceId": payload.workspace_id, "removed": True, "executionTimeMs": elapsed_ms}
