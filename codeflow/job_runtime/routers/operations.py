"""Ask / edit endpoints: the execute-or-queue entry points.

Both answer inline when the job ran immediately and with a ``QueuedResponse``
(HTTP 202) when it was queued; the caller then polls ``/api/jobs/{jobId}``.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, Response, status

from codeflow.job_runtime.deps import Queue, Settings, Workspaces
from codeflow.job_runtime.errors import WorkspaceNotFoundError
from codeflow.job_runtime.models.api import (
    AskRequest,
    AskResponse,
    EditRequest,
    EditResponse,
    QueuedResponse,
    Timing,
    WorkspaceSummary,
)
from codeflow.job_runtime.models.enums import JobType
from codeflow.job_runtime.models.job import ClaudeCodeJobPayload, ClaudeCodeJobResult
from codeflow.job_runtime.models.workspace import Workspace

router = APIRouter(tags=["operations"])


async def _workspace(workspaces: Workspaces, workspace_id: str) -> Workspace:
    workspace = await workspaces.get(workspace_id)
    if workspace is None:
        raise WorkspaceNotFoundError(workspace_id)
    return workspace


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


@router.post("/ask", response_model=AskResponse | QueuedResponse)
async def ask(
    body: AskRequest,
    queue: Queue,
    workspaces: Workspaces,
    response: Response,
) -> AskResponse | QueuedResponse:
    """Ask a read-only question about a workspace."""
    start = time.monotonic()
    workspace = await _workspace(workspaces, body.workspace_id)
    payload = ClaudeCodeJobPayload(
        workspace_id=workspace.id,
        workspace_path=workspace.path,
        question=body.question,
        context=body.context,
        source_branch=body.source_branch,
        repo_url=workspace.repo_url,
    )

    outcome = await queue.execute_or_queue(JobType.CLAUDE_CODE, payload.to_json())
    if not outcome.immediate:
        response.status_code = status.HTTP_202_ACCEPTED
        return QueuedResponse(job_id=outcome.job_id, workspace=WorkspaceSummary.of(workspace))

    result = ClaudeCodeJobResult.model_validate(outcome.result)
    return AskResponse(
        response=result.output,
        workspace=WorkspaceSummary.of(workspace),
        timing=Timing(total=_elapsed_ms(start), claude_execution=result.execution_time_ms),
        usage=result.usage,
    )


@router.post("/edit", response_model=EditResponse | QueuedResponse)
async def edit(
    body: EditRequest,
    queue: Queue,
    workspaces: Workspaces,
    settings: Settings,
    response: Response,
) -> EditResponse | QueuedResponse:
    """Let Claude change a workspace; the changes are committed and pushed."""
    start = time.monotonic()
    workspace = await _workspace(workspaces, body.workspace_id)
    payload = ClaudeCodeJobPayload(
        workspace_id=workspace.id,
        workspace_path=workspace.path,
        question=body.question,
        context=body.context,
        source_branch=body.source_branch,
        repo_url=workspace.repo_url,
        create_mr=body.create_mr,
        edit_request=True,
        task_id=body.task_id,
        new_branch_name=body.new_branch_name,
        callback=body.callback,
    )

    outcome = await queue.execute_or_queue(
        JobType.CLAUDE_CODE, payload.to_json(), force_queue=settings.edit_always_queue
    )
    if not outcome.immediate:
        response.status_code = status.HTTP_202_ACCEPTED
        return QueuedResponse(job_id=outcome.job_id, workspace=WorkspaceSummary.of(workspace))

    result = ClaudeCodeJobResult.model_validate(outcome.result)
    return EditResponse(
        response=result.output,
        workspace=WorkspaceSummary.of(workspace),
        timing=Timing(total=_elapsed_ms(start), claude_execution=result.execution_time_ms),
        usage=result.usage,
        git_workflow=result.git_workflow,
        post_execution=result.post_execution,
    )
