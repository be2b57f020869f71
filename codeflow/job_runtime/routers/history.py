"""Execution history endpoints (a view over finished claude-code jobs)."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Query, status

from codeflow.job_runtime.deps import Queue, Workspaces
from codeflow.job_runtime.managers import history
from codeflow.job_runtime.models.api import ClearHistoryResponse
from codeflow.job_runtime.models.job import ExecutionHistoryEntry

router = APIRouter(prefix="/history", tags=["history"])


@router.get("", response_model=list[ExecutionHistoryEntry])
async def list_history(
    queue: Queue,
    workspaces: Workspaces,
    workspace_id: Annotated[str | None, Query(alias="workspaceId")] = None,
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> list[ExecutionHistoryEntry]:
    """Finished executions, most recent first."""
    return await history.list_history(queue, workspaces, workspace_id=workspace_id, limit=limit)


@router.delete("", response_model=ClearHistoryResponse)
async def clear_history(queue: Queue) -> ClearHistoryResponse:
    """Delete every finished claude-code job."""
    return ClearHistoryResponse(deleted=await history.clear_history(queue))


@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_history_entry(entry_id: str, queue: Queue) -> None:
    await history.delete_history_entry(queue, entry_id)
