"""Execution history: a read projection over finished ``claude-code`` jobs.

Nothing here is stored separately.  Listing history reads finished jobs from
the queue; clearing history deletes those jobs.  Jobs of other types are
never touched.
"""

from __future__ import annotations

from loguru import logger

from codeflow.job_runtime.errors import JobNotFinishedError, JobNotFoundError
from codeflow.job_runtime.models.enums import JobStatus, JobType
from codeflow.job_runtime.models.job import ClaudeCodeJobPayload, ClaudeCodeJobResult, ExecutionHistoryEntry, Job
from codeflow.job_runtime.queue import JobQueue
from codeflow.job_runtime.store.base import WorkspaceStore

FINISHED = (JobStatus.COMPLETED, JobStatus.FAILED)


def _to_entry(job: Job, workspace_names: dict[str, str]) -> ExecutionHistoryEntry:
    payload = ClaudeCodeJobPayload.model_validate(job.payload)
    result = ClaudeCodeJobResult.model_validate(job.result) if job.result else None
    return ExecutionHistoryEntry(
        id=job.id,
        workspace_id=payload.workspace_id,
        workspace_name=workspace_names.get(payload.workspace_id, payload.workspace_id),
        question=payload.question,
        response=result.output if result else "",
        status=job.status,
        executed_at=job.completed_at or job.created_at,
        execution_time_ms=result.execution_time_ms if result else None,
        error_message=job.error,
        json_logs=result.json_logs if result else None,
        raw_output=result.raw_output if result else None,
    )


async def list_history(
    queue: JobQueue,
    workspaces: WorkspaceStore,
    *,
    workspace_id: str | None = None,
    limit: int | None = None,
) -> list[ExecutionHistoryEntry]:
    """History entries, most recent first."""
    jobs = await queue.list_jobs(FINISHED, job_type=JobType.CLAUDE_CODE)
    if workspace_id is not None:
        jobs = [j for j in jobs if j.payload.get("workspaceId") == workspace_id]
    if limit is not None:
        jobs = jobs[:limit]
    names = {w.id: w.name for w in await workspaces.list()}
    return [_to_entry(job, names) for job in jobs]


async def clear_history(queue: JobQueue) -> int:
    """Delete every finished ``claude-code`` job.  Returns how many were deleted."""
    deleted = 0
    for job in await queue.list_jobs(FINISHED, job_type=JobType.CLAUDE_CODE):
        try:
            await queue.delete_finished_job(job.id)
        except JobNotFoundError:
            continue
        deleted += 1
    logger.info("Execution history cleared ({} jobs deleted)", deleted)
    return deleted


async def delete_history_entry(queue: JobQueue, entry_id: str) -> None:
    """Delete one history entry (its finished job).

    Raises ``JobNotFoundError`` if no finished ``claude-code`` job has that id.
    """
    job = await queue.get_job(entry_id)
    if job.type != JobType.CLAUDE_CODE:
        raise JobNotFoundError(entry_id)
    if not job.status.is_finished:
        raise JobNotFinishedError(entry_id, job.status)
    await queue.delete_finished_job(entry_id)
