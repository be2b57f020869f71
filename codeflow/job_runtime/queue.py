"""Execute-or-queue job scheduler.

Every ask/edit request enters through ``JobQueue.execute_or_queue``:

1. **Admit**: under one lock, count the slots used by jobs of the same type.
   With a free slot (and nobody older waiting) the job is persisted straight
   into ``processing`` and registered; otherwise it is persisted ``pending``.
2. **Run**: immediate jobs run inside the caller's request; pending jobs are
   claimed by the background worker in admission order as slots free up.
3. **Finish**: every run ends in ``completed`` or ``failed`` -- handler
   exceptions, crashes and shutdown cancellation included -- followed by the
   optional completion callback.

Job state machine::

    pending -> processing -> completed
                          -> failed

Terminal jobs are never modified again; they can only be deleted.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from loguru import logger

from codeflow.job_runtime.context import RunningJob
from codeflow.job_runtime.errors import CodeflowError, JobNotFinishedError, JobNotFoundError, ValidationError
from codeflow.job_runtime.models.enums import JobStatus, JobType
from codeflow.job_runtime.models.job import Job
from codeflow.job_runtime.models.workspace import utcnow

if TYPE_CHECKING:
    from codeflow.job_runtime.callbacks import CallbackSender
    from codeflow.job_runtime.registry import ExecutionRegistry
    from codeflow.job_runtime.store.base import JobStore

JobHandler = Callable[[Job], Awaitable[dict[str, Any]]]

RECENT_JOBS_LIMIT = 10
ORPHANED_JOB_ERROR = "Interrupted: the service stopped while this job was processing"
CANCELLED_JOB_ERROR = "Cancelled: the service shut down before the job finished"


@dataclass
class QueueOutcome:
    """Return value of ``execute_or_queue``."""

    immediate: bool
    job_id: str
    result: dict[str, Any] | None = None


def _newest_first(jobs: Iterable[Job]) -> list[Job]:
    return sorted(jobs, key=lambda j: (j.created_at, j.sequence), reverse=True)


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class JobQueue:
    """Single-writer job scheduler with a per-type concurrency limit.

    The admission check ("is a slot free") and the ``processing`` transition
    happen under ``self._lock``, both for inline requests and for the worker,
    so no interleaving can admit more than ``max_concurrent`` jobs of a type.
    """

    def __init__(
        self,
        store: JobStore,
        handlers: Mapping[JobType, JobHandler],
        registry: ExecutionRegistry,
        *,
        max_concurrent: int = 2,
        poll_interval: float = 2.0,
        retention_days: int = 7,
        cleanup_every: int = 100,
        callbacks: CallbackSender | None = None,
    ) -> None:
        if max_concurrent < 1:
            msg = "max_concurrent must be at least 1"
            raise ValueError(msg)
        self._store = store
        self._handlers = dict(handlers)
        self._registry = registry
        self._max_concurrent = max_concurrent
        self._poll_interval = poll_interval
        self._retention = timedelta(days=retention_days)
        self._cleanup_every = max(cleanup_every, 1)
        self._callbacks = callbacks

        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._sequence = 0
        self._worker: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._deliveries: set[asyncio.Task] = set()
        self._stopping = False

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    # -- Startup ---------------------------------------------------------------

    async def initialize(self) -> int:
        """Restore the admission counter and fail jobs orphaned by a restart.

        Returns the number of recovered (failed) jobs.
        """
        jobs = await self._store.list()
        self._sequence = max((j.sequence for j in jobs), default=0)
        return await self.recover_orphaned_jobs(jobs)

    async def recover_orphaned_jobs(self, jobs: Iterable[Job] | None = None) -> int:
        """Mark ``processing`` jobs that no live task owns as failed."""
        if jobs is None:
            jobs = await self._store.list()
        recovered = 0
        async with self._lock:
            for job in jobs:
                if job.status is JobStatus.PROCESSING and self._registry.get(job.id) is None:
                    await self._store.save(
                        job.model_copy(
                            update={
                                "status": JobStatus.FAILED,
                                "completed_at": utcnow(),
                                "error": ORPHANED_JOB_ERROR,
                            }
                        )
                    )
                    recovered += 1
        if recovered:
            logger.warning("Queue: marked {} orphaned processing jobs as failed", recovered)
        return recovered

    # -- Admission -------------------------------------------------------------

    async def execute_or_queue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        force_queue: bool = False,
    ) -> QueueOutcome:
        """Run the job now if a slot is free, otherwise enqueue it.

        Immediate executions return the handler result inline; if the handler
        fails, the job is recorded as failed and the original exception is
        re-raised to the caller.  Queued executions return the job id at once.
        """
        if job_type not in self._handlers:
            msg = f"No handler registered for job type '{job_type}'"
            raise ValidationError(msg)

        async with self._lock:
            self._sequence += 1
            job = Job(id=uuid.uuid4().hex, type=job_type, payload=payload, sequence=self._sequence)
            immediate = (
                not force_queue
                and not self._registry.is_shutting_down
                and self._registry.count(job_type) < self._max_concurrent
                and not await self._has_pending(job_type)
            )
            if immediate:
                job = job.model_copy(update={"status": JobStatus.PROCESSING, "started_at": utcnow()})
                await self._store.save(job)
                self._registry.register(
                    RunningJob(job.id, job_type, workspace_id=payload.get("workspaceId"), immediate=True)
                )
            else:
                await self._store.save(job)

        if not immediate:
            logger.info("Job {} ({}) queued at position {}", job.id, job_type, self._sequence)
            self._wakeup.set()
            return QueueOutcome(immediate=False, job_id=job.id)

        logger.info("Job {} ({}) executing immediately", job.id, job_type)
        finished, error = await self._run(job)
        if error is not None:
            raise error
        return QueueOutcome(immediate=True, job_id=job.id, result=finished.result)

    async def _has_pending(self, job_type: JobType) -> bool:
        return any(j.status is JobStatus.PENDING and j.type == job_type for j in await self._store.list())

    # -- Execution -------------------------------------------------------------

    async def _run(self, job: Job) -> tuple[Job, Exception | None]:
        """Run the handler and record the terminal state on every path."""
        handler = self._handlers[job.type]
        try:
            result = await handler(job)
        except asyncio.CancelledError:
            await asyncio.shield(self._finish(job, error=CANCELLED_JOB_ERROR))
            raise
        except CodeflowError as exc:
            logger.warning("Job {} failed: {}", job.id, _describe(exc))
            return await self._finish(job, error=_describe(exc)), exc
        except Exception as exc:
            logger.exception("Job {} crashed", job.id)
            return await self._finish(job, error=_describe(exc)), exc
        else:
            return await self._finish(job, result=result), None
        finally:
            self._registry.unregister(job.id)
            self._wakeup.set()

    async def _finish(self, job: Job, *, result: dict[str, Any] | None = None, error: str | None = None) -> Job:
        finished = job.model_copy(
            update={
                "status": JobStatus.FAILED if error is not None else JobStatus.COMPLETED,
                "completed_at": utcnow(),
                "result": result,
                "error": error,
            }
        )
        try:
            await self._store.save(finished)
        except Exception:
            # Startup recovery fails the job if this write never lands.
            logger.exception("Job {}: could not persist terminal state {}", job.id, finished.status)
        logger.info("Job {} {}", job.id, finished.status)

        self._schedule_callback(finished)
        return finished

    def _schedule_callback(self, job: Job) -> None:
        """Deliver the callback in the background so it never holds a slot."""
        if self._callbacks is None or not job.payload.get("callback"):
            return
        task = asyncio.create_task(self._deliver(job), name=f"callback-{job.id}")
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, job: Job) -> None:
        try:
            await self._callbacks.notify(job)
        except Exception:
            logger.exception("Job {}: callback delivery crashed", job.id)

    async def drain_callbacks(self, timeout: float | None = None) -> None:
        """Wait for in-flight callback deliveries, at most ``timeout`` seconds."""
        if self._deliveries:
            await asyncio.wait(list(self._deliveries), timeout=timeout)

    # -- Worker ----------------------------------------------------------------

    def start(self) -> None:
        """Start the background worker on the running event loop."""
        if self._worker is not None and not self._worker.done():
            return
        self._stopping = False
        self._worker = asyncio.create_task(self._worker_loop(), name="codeflow-queue-worker")
        logger.info(
            "Queue worker started (max_concurrent={}, poll_interval={}s)", self._max_concurrent, self._poll_interval
        )

    async def stop(self) -> None:
        """Stop claiming new jobs.  Running jobs are left to the registry drain."""
        self._stopping = True
        self._wakeup.set()
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        logger.info("Queue worker stopped")

    async def _worker_loop(self) -> None:
        iteration = 0
        while not self._stopping:
            iteration += 1
            self._wakeup.clear()
            try:
                await self.dispatch_pending()
                if iteration % self._cleanup_every == 0:
                    await self.cleanup_old_jobs()
            except Exception:
                logger.exception("Queue worker iteration {} failed", iteration)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)

    async def dispatch_pending(self) -> list[str]:
        """Claim pending jobs for every free slot and start them.

        Returns the ids of the jobs started.
        """
        claimed = await self._claim_pending()
        for job in claimed:
            task = asyncio.create_task(self._run_queued(job), name=f"job-{job.id}")
            running = self._registry.get(job.id)
            if running is not None:
                running.task = task
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return [job.id for job in claimed]

    async def _claim_pending(self) -> list[Job]:
        async with self._lock:
            if self._registry.is_shutting_down:
                return []
            pending = sorted(
                (j for j in await self._store.list() if j.status is JobStatus.PENDING),
                key=lambda j: (j.sequence, j.created_at),
            )
            claimed = []
            for job in pending:
                if self._registry.count(job.type) >= self._max_concurrent:
                    continue
                job = job.model_copy(update={"status": JobStatus.PROCESSING, "started_at": utcnow()})
                await self._store.save(job)
                self._registry.register(RunningJob(job.id, job.type, workspace_id=job.payload.get("workspaceId")))
                claimed.append(job)
            return claimed

    async def _run_queued(self, job: Job) -> None:
        logger.info("Job {} ({}) picked up by worker", job.id, job.type)
        await self._run(job)

    async def wait_for_idle(self) -> None:
        """Wait until every worker-started job task and callback delivery has finished."""
        while self._tasks or self._deliveries:
            await asyncio.gather(*self._tasks, *self._deliveries, return_exceptions=True)

    # -- Queries ---------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job:
        job = await self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(
        self,
        statuses: Iterable[JobStatus] | None = None,
        *,
        job_type: JobType | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        """Jobs filtered by status and type, newest first."""
        wanted = set(statuses) if statuses else None
        jobs = [
            j
            for j in await self._store.list()
            if (wanted is None or j.status in wanted) and (job_type is None or j.type == job_type)
        ]
        jobs = _newest_first(jobs)
        return jobs[:limit] if limit is not None else jobs

    async def queue_status(self) -> dict[str, Any]:
        jobs = await self._store.list()
        counts = Counter(str(j.status) for j in jobs)
        processing = _newest_first(j for j in jobs if j.status is JobStatus.PROCESSING)
        pending = sorted((j for j in jobs if j.status is JobStatus.PENDING), key=lambda j: j.sequence)
        finished = sorted(
            (j for j in jobs if j.status.is_finished),
            key=lambda j: j.completed_at or j.created_at,
            reverse=True,
        )
        return {
            "is_processing": bool(processing),
            "has_pending": bool(pending),
            "counts": {str(s): counts.get(str(s), 0) for s in JobStatus},
            "current_jobs": processing,
            "pending_jobs": pending,
            "recent_jobs": finished[:RECENT_JOBS_LIMIT],
        }

    # -- Deletion --------------------------------------------------------------

    async def delete_finished_job(self, job_id: str) -> JobStatus:
        """Delete a completed or failed job and return the status it had.

        Raises ``JobNotFoundError`` or ``JobNotFinishedError`` (a conflict:
        in-flight work is never discarded).
        """
        async with self._lock:
            job = await self._store.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if not job.status.is_finished:
                raise JobNotFinishedError(job_id, job.status)
            await self._store.delete(job_id)
        logger.info("Job {} deleted (was {})", job_id, job.status)
        return job.status

    async def cleanup_old_jobs(self, now: datetime | None = None) -> int:
        """Delete finished jobs that completed more than ``retention_days`` ago."""
        cutoff = (now or utcnow()) - self._retention
        removed = 0
        async with self._lock:
            for job in await self._store.list():
                finished_at = job.completed_at or job.created_at
                if job.status.is_finished and finished_at < cutoff and await self._store.delete(job.id):
                    removed += 1
        if removed:
            logger.info("Queue cleanup: removed {} jobs older than {}", removed, self._retention)
        return removed
