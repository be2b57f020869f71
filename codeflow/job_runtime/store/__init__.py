"""Store implementations for workspace and job persistence."""

from codeflow.job_runtime.store.base import JobStore, WorkspaceStore
from codeflow.job_runtime.store.local import LocalJobStore, LocalWorkspaceStore

__all__ = ["JobStore", "LocalJobStore", "LocalWorkspaceStore", "WorkspaceStore"]
