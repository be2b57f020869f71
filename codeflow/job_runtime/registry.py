"""In-process execution registry.

Tracks the jobs that currently hold an execution slot and hands out the
per-workspace locks that keep two jobs from touching the same working tree.
Ephemeral -- empty on process restart.  All durable state lives in the job
store.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from codeflow.job_runtime.context import RunningJob
    from codeflow.job_runtime.models.enums import JobType


class ShuttingDownError(RuntimeError):
    """Raised when attempting to register a job during shutdown."""


class ExecutionRegistry:
    """Registry of currently executing jobs.

    The queue registers a job in the same critical section in which it marks
    the job ``processing``, so ``active_count`` is always the number of slots
    in use.

    The registry also provides a drain mechanism for graceful shutdown:
    ``wait_until_drained`` blocks until all jobs have been unregistered.
    """

    def __init__(self) -> None:
        self._running: dict[str, RunningJob] = {}
        self._workspace_locks: dict[str, asyncio.Lock] = {}
        self._drain_event = asyncio.Event()
        self._drain_event.set()  # Starts "drained" (no jobs).
        self._shutting_down = False

    # -- Mutation --------------------------------------------------------------

    def register(self, running: RunningJob) -> None:
        """Register a running job.  Raises ``ShuttingDownError`` if shutting down."""
        if self._shutting_down:
            raise ShuttingDownError
        logger.debug("Registry: register job {} (type={})", running.job_id, running.job_type)
        self._running[running.job_id] = running
        self._drain_event.clear()

    def unregister(self, job_id: str) -> RunningJob | None:
        running = self._running.pop(job_id, None)
        if running:
            logger.debug("Registry: unregister job {} after {:.1f}s", job_id, running.elapsed)
        if not self._running:
            self._drain_event.set()
        return running

    # -- Query -----------------------------------------------------------------

    def get(self, job_id: str) -> RunningJob | None:
        return self._running.get(job_id)

    def count(self, job_type: JobType) -> int:
        """Slots in use by jobs of ``job_type``."""
        return sum(1 for r in self._running.values() if r.job_type == job_type)

    @property
    def active_count(self) -> int:
        return len(self._running)

    # -- Workspace locks -------------------------------------------------------

    def workspace_lock(self, workspace_id: str) -> asyncio.Lock:
        """Lock serialising branch-init, CLI run and commit on one workspace."""
        lock = self._workspace_locks.get(workspace_id)
        if lock is None:
            lock = self._workspace_locks[workspace_id] = asyncio.Lock()
        return lock

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Mark the registry as shutting down.  New registrations are refused."""
        self._shutting_down = True
        logger.info("Registry: shutdown initiated, refusing new jobs")
        if not self._running:
            self._drain_event.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def cancel_all(self) -> int:
        """Cancel the worker tasks of all queued jobs still running.

        Last resort during forced shutdown; the queue's terminal guarantee
        records each cancelled job as failed.  Inline executions are owned by
        their HTTP request and are not cancelled here.

        Returns the number of tasks cancelled.
        """
        count = 0
        for running in self._running.values():
            if running.task is not None and not running.task.done():
                running.task.cancel()
                count += 1
                logger.info("Registry: cancelled job {}", running.job_id)
        return count

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until all jobs have been unregistered (drained).

        Returns ``True`` if the registry is empty, ``False`` if *timeout*
        expired with jobs still running.
        """
        if not self._running:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Registry: drain timed out after {}s with {} jobs still running",
                timeout,
                len(self._running),
            )
            return False
        else:
            return True
