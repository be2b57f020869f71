"""Data models for the job runtime."""

from codeflow.job_runtime.models.api import (
    AskRequest,
    AskResponse,
    EditRequest,
    EditResponse,
    QueuedResponse,
    QueueStatusResponse,
    WorkspaceClone,
    WorkspaceSummary,
)
from codeflow.job_runtime.models.enums import ClaudeEventType, GitProvider, JobStatus, JobType
from codeflow.job_runtime.models.job import (
    CallbackConfig,
    ClaudeCodeJobPayload,
    ClaudeCodeJobResult,
    ClaudeUsage,
    ExecutionHistoryEntry,
    GitBranchWorkflowResult,
    Job,
    PostExecutionResult,
    WorkspaceCleanupPayload,
)
from codeflow.job_runtime.models.workspace import Workspace, WorkspaceGitConfig, WorkspaceMetadata

__all__ = [
    # API schemas
    "AskRequest",
    "AskResponse",
    # Jobs
    "CallbackConfig",
    # Enums
    "ClaudeCodeJobPayload",
    "ClaudeCodeJobResult",
    "ClaudeEventType",
    "ClaudeUsage",
    "EditRequest",
    "EditResponse",
    "ExecutionHistoryEntry",
    "GitBranchWorkflowResult",
    "GitProvider",
    "Job",
    "JobStatus",
    "JobType",
    "PostExecutionResult",
    "QueueStatusResponse",
    "QueuedResponse",
    # Workspaces
    "Workspace",
    "WorkspaceCleanupPayload",
    "WorkspaceClone",
    "WorkspaceGitConfig",
    "WorkspaceMetadata",
    "WorkspaceSummary",
]
