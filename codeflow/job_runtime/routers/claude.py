"""Claude CLI availability probe."""

from __future__ import annotations

from fastapi import APIRouter

from codeflow.job_runtime.deps import Settings
from codeflow.job_runtime.execution.claude import check_claude_availability
from codeflow.job_runtime.models.api import ClaudeStatusResponse

router = APIRouter(prefix="/claude", tags=["claude"])


@router.get("/status", response_model=ClaudeStatusResponse)
async def claude_status(settings: Settings) -> ClaudeStatusResponse:
    """Run ``claude --version`` and report whether the CLI is usable."""
    availability = await check_claude_availability(settings)
    return ClaudeStatusResponse(
        available=availability.available,
        version=availability.version,
        error=availability.error,
    )
