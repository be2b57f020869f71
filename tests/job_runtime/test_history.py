"""Execution history is derived from finished claude-code jobs only."""

from __future__ import annotations

import pytest

from codeflow.job_runtime.errors import JobNotFinishedError, JobNotFoundError
from codeflow.job_runtime.managers.history import clear_history, delete_history_entry, list_history
from codeflow.job_runtime.models.enums import JobStatus, JobType
from codeflow.job_runtime.models.workspace import Workspace
from codeflow.job_runtime.queue import JobQueue
from codeflow.job_runtime.store.local import LocalWorkspaceStore


def _payload(workspace: Workspace, question: str) -> dict:
    return {
        "workspaceId": workspace.id,
        "workspacePath": workspace.path,
        "question": question,
        "repoUrl": workspace.repo_url,
    }


async def test_history_lists_finished_jobs_newest_first(
    queue: JobQueue, workspace_store: LocalWorkspaceStore, workspace: Workspace
) -> None:
    await queue.execute_or_queue(JobType.CLAUDE_CODE, _payload(workspace, "one"))
    await queue.execute_or_queue(JobType.CLAUDE_CODE, _payload(workspace, "two"))
    await queue.execute_or_queue(JobType.CLAUDE_CODE, _payload(workspace, "pending"), force_queue=True)

    entries = await list_history(queue, workspace_store)
    assert [e.question for e in entries] == ["two", "one"]
    assert entries[0].response == "answer: two"
    assert entries[0].execution_time_ms == 7

    assert [e.question for e in await list_history(queue, workspace_store, limit=1)] == ["two"]
    assert await list_history(queue, workspace_store, workspace_id="other") == []


async def test_clear_history_keeps_other_job_types(queue: JobQueue, workspace: Workspace) -> None:
    await queue.execute_or_queue(JobType.CLAUDE_CODE, _payload(workspace, "one"))
    pending = await queue.execute_or_queue(JobType.CLAUDE_CODE, _payload(workspace, "p"), force_queue=True)
    cleanup = await queue.execute_or_queue(JobType.WORKSPACE_CLEANUP, {"workspaceId": workspace.id})

    assert await clear_history(queue) == 1

    remaining = {j.id: j for j in await queue.list_jobs()}
    assert set(remaining) == {pending.job_id, cleanup.job_id}
    assert remaining[cleanup.job_id].status is JobStatus.COMPLETED


async def test_delete_history_entry_guards(queue: JobQueue, workspace: Workspace) -> None:
    pending = await queue.execute_or_queue(JobType.CLAUDE_CODE, _payload(workspace, "p"), force_queue=True)
    with pytest.raises(JobNotFinishedError):
        await delete_history_entry(queue, pending.job_id)

    with pytest.raises(JobNotFoundError):
        await delete_history_entry(queue, "missing")
