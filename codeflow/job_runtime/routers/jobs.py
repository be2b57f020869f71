"""Job polling and deletion endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Query

from codeflow.job_runtime.deps import Queue
from codeflow.job_runtime.errors import ValidationError
from codeflow.job_runtime.models.api import DeleteJobResponse, JobListMeta, JobListResponse
from codeflow.job_runtime.models.enums import JobStatus
from codeflow.job_runtime.models.job import Job

router = APIRouter(prefix="/jobs", tags=["jobs"])

MAX_LIST_LIMIT = 500


def parse_status_filter(values: list[str] | None) -> list[JobStatus] | None:
    """Accept repeated and comma-separated ``status`` query values."""
    if not values:
        return None
    statuses: list[JobStatus] = []
    for value in values:
        for item in value.split(","):
            item = item.strip()
            if not item:
                continue
            try:
                status = JobStatus(item)
            except ValueError:
                msg = f"Unknown job status '{item}'; expected one of: {', '.join(JobStatus)}"
                raise ValidationError(msg) from None
            if status not in statuses:
                statuses.append(status)
    return statuses or None


@router.get("", response_model=JobListResponse)
async def list_jobs(
    queue: Queue,
    status: Annotated[list[str] | None, Query()] = None,
    limit: Annotated[int | None, Query(ge=1, le=MAX_LIST_LIMIT)] = None,
) -> JobListResponse:
    """List jobs, newest first."""
    statuses = parse_status_filter(status)
    jobs = await queue.list_jobs(statuses)
    returned = jobs[:limit] if limit is not None else jobs
    return JobListResponse(
        jobs=returned,
        meta=JobListMeta(
            total=len(jobs),
            returned=len(returned),
            status_filter=[str(s) for s in statuses] if statuses else None,
            limit=limit,
        ),
    )


@router.get("/{job_id}", response_model=Job)
async def get_job(job_id: str, queue: Queue) -> Job:
    """Poll a job.  ``result`` / ``error`` are set once it is finished."""
    return await queue.get_job(job_id)


@router.delete("/{job_id}", response_model=DeleteJobResponse)
async def delete_job(job_id: str, queue: Queue) -> DeleteJobResponse:
    """Delete a completed or failed job (409 while pending or processing)."""
    previous = await queue.delete_finished_job(job_id)
    return DeleteJobResponse(deleted_from=str(previous))
