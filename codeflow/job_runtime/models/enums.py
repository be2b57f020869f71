"""Shared enumerations used across the job runtime."""

from __future__ import annotations

from enum import StrEnum

# -- Job ---------------------------------------------------------------------


class JobStatus(StrEnum):
    """Job lifecycle: pending -> processing -> completed | failed."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_finished(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobType(StrEnum):
    CLAUDE_CODE = "claude-code"
    WORKSPACE_CLEANUP = "workspace-cleanup"


# -- Git ---------------------------------------------------------------------


class GitProvider(StrEnum):
    GITHUB = "github"
    GITLAB = "gitlab"
    OTHER = "other"


# -- Claude CLI --------------------------------------------------------------


class ClaudeEventType(StrEnum):
    """Top-level ``type`` of a stream-json line."""

    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    RESULT = "result"
