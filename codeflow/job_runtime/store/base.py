"""Store interfaces for workspace and job persistence.

Both stores are async key-value collections backed by JSON on disk.  The
runtime only depends on these protocols, so a different backend can be
dropped in without touching the queue or the routers.

Every mutation is a serialised read-modify-write; implementations must
guarantee that two concurrent ``update`` calls never lose each other's
changes.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from codeflow.job_runtime.models.job import Job
from codeflow.job_runtime.models.workspace import Workspace


@runtime_checkable
class WorkspaceStore(Protocol):
    """Workspace index keyed by workspace id."""

    async def get(self, workspace_id: str) -> Workspace | None:
        """Return the workspace or ``None``.  Does not touch ``last_accessed``."""
        ...

    async def save(self, workspace: Workspace) -> None:
        """Insert or replace a workspace record."""
        ...

    async def update(self, workspace_id: str, patch: dict[str, Any]) -> Workspace:
        """Apply a partial update.  Raises ``WorkspaceNotFoundError`` if missing.

        Nested ``metadata`` dicts are merged one level deep.
        """
        ...

    async def delete(self, workspace_id: str) -> bool:
        """Remove the record.  Returns ``False`` if it did not exist."""
        ...

    async def list(self) -> list[Workspace]:
        """All workspaces, most recently accessed first."""
        ...


@runtime_checkable
class JobStore(Protocol):
    """Job records keyed by job id."""

    async def get(self, job_id: str) -> Job | None: ...

    async def save(self, job: Job) -> None: ...

    async def delete(self, job_id: str) -> bool: ...

    async def list(self) -> list[Job]:
        """All jobs, unordered."""
        ...
