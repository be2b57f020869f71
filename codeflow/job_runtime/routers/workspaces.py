"""Workspace endpoints (RPC-style).

All write operations use POST; reads use GET.  Deletion is asynchronous: it
enqueues a ``workspace-cleanup`` job so it never races a running edit.
"""

from __future__ import annotations

from fastapi import APIRouter, status

from codeflow.job_runtime.deps import Queue, Settings, Workspaces
from codeflow.job_runtime.managers import workspaces as workspace_manager
from codeflow.job_runtime.models.api import (
    QueuedResponse,
    WorkspaceBranches,
    WorkspaceClone,
    WorkspaceGitConfigUpdate,
    WorkspaceSummary,
    WorkspaceUpdate,
)
from codeflow.job_runtime.models.enums import JobType
from codeflow.job_runtime.models.job import WorkspaceCleanupPayload
from codeflow.job_runtime.models.workspace import Workspace

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


@router.post("/clone", response_model=Workspace, status_code=status.HTTP_201_CREATED)
async def clone_workspace(body: WorkspaceClone, workspaces: Workspaces, settings: Settings) -> Workspace:
    """Clone a repository into a new workspace."""
    return await workspace_manager.clone_workspace(workspaces, body, settings)


@router.get("/list", response_model=list[Workspace])
async def list_workspaces(workspaces: Workspaces) -> list[Workspace]:
    """List all workspaces, most recently accessed first."""
    return await workspace_manager.list_workspaces(workspaces)


@router.get("/{workspace_id}/get", response_model=Workspace)
async def get_workspace(workspace_id: str, workspaces: Workspaces) -> Workspace:
    return await workspace_manager.get_workspace(workspaces, workspace_id)


@router.post("/{workspace_id}/git-config", response_model=Workspace)
async def update_git_config(
    workspace_id: str,
    body: WorkspaceGitConfigUpdate,
    workspaces: Workspaces,
    settings: Settings,
) -> Workspace:
    """Set commit identity / signing key for the clone."""
    return await workspace_manager.update_git_config(
        workspaces, workspace_id, body, timeout=settings.git_timeout_seconds
    )


@router.post("/{workspace_id}/update", response_model=Workspace)
async def update_workspace(
    workspace_id: str,
    body: WorkspaceUpdate,
    workspaces: Workspaces,
    settings: Settings,
) -> Workspace:
    """Change the branch new jobs sync with and open merge requests against."""
    return await workspace_manager.update_target_branch(
        workspaces, workspace_id, body, timeout=settings.git_timeout_seconds
    )


@router.get("/{workspace_id}/branches", response_model=WorkspaceBranches)
async def list_branches(workspace_id: str, workspaces: Workspaces, settings: Settings) -> WorkspaceBranches:
    branches = await workspace_manager.list_branches(workspaces, workspace_id, timeout=settings.git_timeout_seconds)
    return WorkspaceBranches(branches=branches)


@router.post("/{workspace_id}/delete", response_model=QueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def delete_workspace(workspace_id: str, workspaces: Workspaces, queue: Queue) -> QueuedResponse:
    """Queue removal of the workspace directory and record."""
    workspace = await workspace_manager.get_workspace(workspaces, workspace_id)
    outcome = await queue.execute_or_queue(
        JobType.WORKSPACE_CLEANUP,
        WorkspaceCleanupPayload(workspace_id=workspace_id).to_json(),
        force_queue=True,
    )
    return QueuedResponse(
        job_id=outcome.job_id,
        message="Workspace deletion queued - poll /api/jobs/{jobId} for results",
        workspace=WorkspaceSummary.of(workspace),
    )
