"""Workspace data model.

A workspace is a local clone of one Git repository, identified by a short
opaque id and stored in the workspace index
(``{data_root}/workspaces/.workspace-index.json``).  The directory on disk
and the index record are created and deleted together.
"""

from __future__ import annotations

import secrets
import string
from datetime import UTC, datetime

from pydantic import Field

from codeflow.job_runtime.models.base import CamelModel

_ID_ALPHABET = string.ascii_letters + string.digits + "_-"


def new_workspace_id() -> str:
    """10-character URL-safe token."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(10))


def utcnow() -> datetime:
    return datetime.now(UTC)


class WorkspaceGitConfig(CamelModel):
    """Per-repository ``git config`` values applied to the clone."""

    user_email: str | None = None
    user_name: str | None = None
    signing_key: str | None = None
    default_branch: str | None = None


class WorkspaceMetadata(CamelModel):
    size: int = 0
    commit_hash: str | None = None
    is_active: bool = True
    tags: list[str] = Field(default_factory=list)
    git_config: WorkspaceGitConfig | None = None


class Workspace(CamelModel):
    id: str
    path: str
    repo_url: str
    target_branch: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed: datetime = Field(default_factory=utcnow)
    metadata: WorkspaceMetadata = Field(default_factory=WorkspaceMetadata)

    @property
    def name(self) -> str:
        """Repository name from the URL (``group/repo.git`` -> ``repo``)."""
        tail = self.repo_url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
        return tail.removesuffix(".git") or self.id
