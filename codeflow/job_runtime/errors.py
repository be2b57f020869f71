"""Domain exceptions for the job runtime.

Managers, stores and the execution pipeline raise these -- never HTTP
exceptions.  Each class carries the HTTP status the API layer answers with;
the translation itself happens in a single exception handler in ``app.py``.

The builtin bases (``LookupError``, ``ValueError``, ``TimeoutError``) keep
callers that only care about the broad category working without importing
this module.
"""

from __future__ import annotations

from fastapi import status


class CodeflowError(Exception):
    """Base class for all expected runtime failures."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR


# -- NotFound ----------------------------------------------------------------


class NotFoundError(CodeflowError, LookupError):
    status_code = status.HTTP_404_NOT_FOUND


class WorkspaceNotFoundError(NotFoundError):
    """Raised when a workspace id is not in the workspace index."""

    def __init__(self, workspace_id: str) -> None:
        super().__init__(f"Workspace '{workspace_id}' not found.")
        self.workspace_id = workspace_id


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job '{job_id}' not found.")
        self.job_id = job_id


# -- Execution ---------------------------------------------------------------


class UnavailableError(CodeflowError):
    """The Claude CLI binary is missing or does not answer ``--version``."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ExecutionTimeoutError(CodeflowError, TimeoutError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class ProcessError(CodeflowError):
    """The CLI exited non-zero or was killed by a signal."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class GitError(CodeflowError):
    """A git command (or the MR/PR API call) failed."""

    status_code = status.HTTP_502_BAD_GATEWAY


class MergeRequestError(GitError):
    pass


# -- Request -----------------------------------------------------------------


class ValidationError(CodeflowError, ValueError):
    status_code = status.HTTP_400_BAD_REQUEST


class DuplicateWorkspaceError(ValidationError):
    status_code = status.HTTP_409_CONFLICT


class ConflictError(CodeflowError):
    status_code = status.HTTP_409_CONFLICT


class JobNotFinishedError(ConflictError):
    """Deleting a job that is still pending or processing."""

    def __init__(self, job_id: str, job_status: str) -> None:
        super().__init__(f"Job '{job_id}' is {job_status}; only completed or failed jobs can be deleted.")
        self.job_id = job_id
        self.job_status = job_status


class RateLimitedError(CodeflowError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"Rate limit exceeded; retry in {int(retry_after) + 1}s.")
        self.retry_after = retry_after
