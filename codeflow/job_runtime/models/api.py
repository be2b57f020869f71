"""API request / response schemas.

These sit between HTTP and the queue / managers:

- **Request** schemas validate user input and provide defaults.
- **Response** schemas shape what clients see; persisted records
  (``Job``, ``Workspace``) are returned as-is where they already fit.
"""

from __future__ import annotations

from pydantic import Field, field_validator

from codeflow.job_runtime.models.base import CamelModel
from codeflow.job_runtime.models.job import (
    CallbackConfig,
    ClaudeUsage,
    GitBranchWorkflowResult,
    Job,
    PostExecutionResult,
)
from codeflow.job_runtime.models.workspace import Workspace

# ---------------------------------------------------------------------------
# Ask / Edit
# ---------------------------------------------------------------------------


class AskRequest(CamelModel):
    """Read-only question against a workspace."""

    workspace_id: str = Field(min_length=1)
    question: str = Field(min_length=1)
    context: str | None = None
    source_branch: str | None = None


class EditRequest(AskRequest):
    """Change request: Claude may modify files, results are committed."""

    create_mr: bool = Field(default=False, alias="createMR")
    task_id: str | None = None
    task_name: str | None = None
    new_branch_name: str | None = None
    callback: CallbackConfig | None = None

    @field_validator("callback")
    @classmethod
    def _callback_must_be_http(cls, value: CallbackConfig | None) -> CallbackConfig | None:
        if value is not None and not value.url.startswith(("http://", "https://")):
            msg = "callback.url must be an http(s) URL"
            raise ValueError(msg)
        return value


class WorkspaceSummary(CamelModel):
    id: str
    path: str
    repo_url: str
    target_branch: str | None = None

    @classmethod
    def of(cls, workspace: Workspace) -> WorkspaceSummary:
        return cls(
            id=workspace.id,
            path=workspace.path,
            repo_url=workspace.repo_url,
            target_branch=workspace.target_branch,
        )


class Timing(CamelModel):
    total: int
    claude_execution: int


class AskResponse(CamelModel):
    success: bool = True
    response: str
    method: str = "claude-code"
    workspace: WorkspaceSummary
    timing: Timing
    usage: ClaudeUsage | None = None


class EditResponse(AskResponse):
    git_workflow: GitBranchWorkflowResult | None = None
    post_execution: PostExecutionResult | None = None


class QueuedResponse(CamelModel):
    success: bool = True
    queued: bool = True
    job_id: str
    message: str = "Job queued - poll /api/jobs/{jobId} for results"
    workspace: WorkspaceSummary | None = None


# ---------------------------------------------------------------------------
# Jobs / queue
# ---------------------------------------------------------------------------


class JobListMeta(CamelModel):
    total: int
    returned: int
    status_filter: list[str] | None = None
    limit: int | None = None


class JobListResponse(CamelModel):
    jobs: list[Job]
    meta: JobListMeta


class DeleteJobResponse(CamelModel):
    success: bool = True
    deleted_from: str


class QueueStatusResponse(CamelModel):
    is_processing: bool
    has_pending: bool
    counts: dict[str, int]
    current_jobs: list[Job]
    pending_jobs: list[Job]
    recent_jobs: list[Job]


class ClearHistoryResponse(CamelModel):
    success: bool = True
    deleted: int


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


class WorkspaceClone(CamelModel):
    repo_url: str = Field(min_length=1)
    target_branch: str | None = None
    tags: list[str] = Field(default_factory=list)


class WorkspaceGitConfigUpdate(CamelModel):
    """Partial update -- only fields explicitly set by the caller are applied."""

    user_email: str | None = None
    user_name: str | None = None
    signing_key: str | None = None


class WorkspaceUpdate(CamelModel):
    target_branch: str = Field(min_length=1)


class WorkspaceBranches(CamelModel):
    """Branch names for ``sourceBranch`` selection, target branch first."""

    branches: list[str]


class ClaudeStatusResponse(CamelModel):
    available: bool
    version: str | None = None
    error: str | None = None
