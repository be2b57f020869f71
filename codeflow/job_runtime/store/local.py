"""Local filesystem stores.

Workspaces live in a single JSON index (a JSON array of records)::

    {data_root}/workspaces/.workspace-index.json

Jobs are stored one file per job::

    {data_root}/jobs/{job_id}.json

Uses ``anyio.to_thread.run_sync`` for non-blocking file I/O.

Writes are atomic: data is written to a temporary file in the same directory,
then renamed to the target path.  This prevents corrupt reads if the process
crashes mid-write.  Each store serialises its read-modify-write cycles with
one ``asyncio.Lock``; that is sufficient because the service runs as a single
process.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import re
import tempfile
from functools import partial
from pathlib import Path
from typing import Any

from anyio import to_thread
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from codeflow.job_runtime.errors import WorkspaceNotFoundError
from codeflow.job_runtime.models.job import Job
from codeflow.job_runtime.models.workspace import Workspace

INDEX_FILENAME = ".workspace-index.json"

# Job ids arrive from URLs; anything else must never become a path.
_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class LocalWorkspaceStore:
    """JSON-index implementation of the ``WorkspaceStore`` protocol."""

    def __init__(self, data_root: str | Path) -> None:
        self._base = Path(data_root) / "workspaces"
        self._index = self._base / INDEX_FILENAME
        self._lock = asyncio.Lock()

    # -- Read ------------------------------------------------------------------

    async def get(self, workspace_id: str) -> Workspace | None:
        for workspace in await self._load():
            if workspace.id == workspace_id:
                return workspace
        return None

    async def list(self) -> list[Workspace]:
        workspaces = await self._load()
        return sorted(workspaces, key=lambda w: w.last_accessed, reverse=True)

    # -- Write -----------------------------------------------------------------

    async def save(self, workspace: Workspace) -> None:
        async with self._lock:
            workspaces = [w for w in await self._load() if w.id != workspace.id]
            workspaces.append(workspace)
            await self._dump(workspaces)

    async def update(self, workspace_id: str, patch: dict[str, Any]) -> Workspace:
        async with self._lock:
            workspaces = await self._load()
            for idx, current in enumerate(workspaces):
                if current.id != workspace_id:
                    continue
                data = current.model_dump()
                for key, value in patch.items():
                    if key == "metadata" and isinstance(value, dict):
                        data["metadata"] = {**data["metadata"], **value}
                    else:
                        data[key] = value
                updated = Workspace.model_validate(data)
                workspaces[idx] = updated
                await self._dump(workspaces)
                return updated
        raise WorkspaceNotFoundError(workspace_id)

    async def delete(self, workspace_id: str) -> bool:
        async with self._lock:
            workspaces = await self._load()
            remaining = [w for w in workspaces if w.id != workspace_id]
            if len(remaining) == len(workspaces):
                return False
            await self._dump(remaining)
            return True

    # -- Internals -------------------------------------------------------------

    async def _load(self) -> list[Workspace]:
        try:
            raw = await to_thread.run_sync(partial(_read_file, self._index))
        except FileNotFoundError:
            return []
        return [Workspace.model_validate(item) for item in json.loads(raw)]

    async def _dump(self, workspaces: list[Workspace]) -> None:
        data = json.dumps([w.to_json() for w in workspaces], indent=2)
        await to_thread.run_sync(partial(atomic_write, self._index, data))


class LocalJobStore:
    """One-file-per-job implementation of the ``JobStore`` protocol."""

    def __init__(self, data_root: str | Path) -> None:
        self._base = Path(data_root) / "jobs"
        self._lock = asyncio.Lock()

    def _job_path(self, job_id: str) -> Path | None:
        if not _SAFE_ID.match(job_id):
            return None
        return self._base / f"{job_id}.json"

    async def get(self, job_id: str) -> Job | None:
        path = self._job_path(job_id)
        if path is None:
            return None
        try:
            raw = await to_thread.run_sync(partial(_read_file, path))
        except FileNotFoundError:
            return None
        return Job.model_validate_json(raw)

    async def save(self, job: Job) -> None:
        path = self._job_path(job.id)
        if path is None:
            msg = f"Invalid job id: {job.id!r}"
            raise ValueError(msg)
        data = job.model_dump_json(by_alias=True, indent=2)
        async with self._lock:
            await to_thread.run_sync(partial(atomic_write, path, data))

    async def delete(self, job_id: str) -> bool:
        path = self._job_path(job_id)
        if path is None:
            return False
        async with self._lock:
            return await to_thread.run_sync(partial(_unlink, path))

    async def list(self) -> list[Job]:
        raws = await to_thread.run_sync(partial(_read_dir, self._base, ".json"))
        jobs: list[Job] = []
        for name, raw in raws:
            try:
                jobs.append(Job.model_validate_json(raw))
            except PydanticValidationError:
                logger.warning("Job store: skipping unreadable record {}", name)
        return jobs


# -- Sync helpers (run in thread pool) -----------------------------------------


def atomic_write(path: Path, data: str) -> None:
    """Write data atomically: temp file + rename.

    The temp file is created in the same directory so ``os.rename`` is atomic
    on POSIX.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.rename(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def _read_file(path: Path) -> str:
    """Read file contents.  Raises ``FileNotFoundError`` if missing."""
    return path.read_text(encoding="utf-8")


def _read_dir(directory: Path, suffix: str) -> list[tuple[str, str]]:
    """Read every ``*suffix`` file in a directory.  Missing directory -> []."""
    if not directory.is_dir():
        return []
    results = []
    for path in directory.iterdir():
        if path.suffix != suffix:
            continue
        # A file may vanish between iterdir and read when a job is deleted.
        with contextlib.suppress(FileNotFoundError):
            results.append((path.name, path.read_text(encoding="utf-8")))
    return results


def _unlink(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
