"""In-flight job context.

Durable job state lives in the job store; this is the per-process handle the
registry keeps while a job is running (its type for slot accounting and, for
queued jobs, the asyncio task so shutdown can cancel it).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from codeflow.job_runtime.models.enums import JobType


@dataclass
class RunningJob:
    """A job currently holding an execution slot."""

    job_id: str
    job_type: JobType
    workspace_id: str | None = None
    immediate: bool = False
    """True when the caller is waiting on the result inline."""

    task: asyncio.Task | None = None
    """Worker task for queued jobs.  ``None`` for inline executions."""

    started_monotonic: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_monotonic
