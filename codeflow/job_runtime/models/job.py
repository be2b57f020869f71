"""Job records, payloads and results.

A job is one unit of Claude execution work (or workspace housekeeping).  The
queue owns job records exclusively; payloads reference workspaces only by id
and the workspace is looked up fresh whenever the job runs.

``Job.payload`` and ``Job.result`` are stored as plain dicts so the job store
stays agnostic of job types; each handler validates them with its own model
(``ClaudeCodeJobPayload``, ``ClaudeCodeJobResult``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from codeflow.job_runtime.models.base import CamelModel
from codeflow.job_runtime.models.enums import JobStatus, JobType
from codeflow.job_runtime.models.workspace import utcnow


class CallbackConfig(CamelModel):
    """Webhook fired once when the job reaches a terminal state."""

    url: str
    secret: str | None = None


class ClaudeCodeJobPayload(CamelModel):
    workspace_id: str
    workspace_path: str
    question: str
    context: str | None = None
    source_branch: str | None = None
    repo_url: str
    create_mr: bool = Field(default=False, alias="createMR")
    edit_request: bool = False
    task_id: str | None = None
    new_branch_name: str | None = None
    callback: CallbackConfig | None = None


class WorkspaceCleanupPayload(CamelModel):
    workspace_id: str


# -- Results -----------------------------------------------------------------


class GitBranchWorkflowResult(CamelModel):
    """Branch-state decision consumed by the CLI run and the committer."""

    merge_request_required: bool
    source_branch: str
    target_branch: str


class PostExecutionResult(CamelModel):
    has_changes: bool
    commit_hash: str | None = None
    merge_request_url: str | None = None
    pushed_branch: str | None = None


class ClaudeUsage(CamelModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    cost_usd: float | None = None


class ClaudeCodeJobResult(CamelModel):
    output: str
    execution_time_ms: int
    json_logs: list[dict[str, Any]] | None = None
    raw_output: str | None = None
    usage: ClaudeUsage | None = None
    git_workflow: GitBranchWorkflowResult | None = None
    post_execution: PostExecutionResult | None = None


# -- Job ---------------------------------------------------------------------


class Job(CamelModel):
    id: str
    type: JobType
    payload: dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    sequence: int = 0
    """Admission order; the worker always picks the lowest pending sequence."""

    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None


class ExecutionHistoryEntry(CamelModel):
    """Read projection of a finished ``claude-code`` job.  Never stored."""

    id: str
    workspace_id: str
    workspace_name: str
    question: str
    response: str
    status: JobStatus
    executed_at: datetime
    execution_time_ms: int | None = None
    error_message: str | None = None
    json_logs: list[dict[str, Any]] | None = None
    raw_output: str | None = None
