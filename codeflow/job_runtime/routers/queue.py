"""Queue overview endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from codeflow.job_runtime.deps import Queue
from codeflow.job_runtime.models.api import QueueStatusResponse

router = APIRouter(prefix="/queue", tags=["queue"])


@router.get("/status", response_model=QueueStatusResponse)
async def queue_status(queue: Queue) -> QueueStatusResponse:
    """Counts per status plus running, pending and recently finished jobs."""
    return QueueStatusResponse(**await queue.queue_status())
