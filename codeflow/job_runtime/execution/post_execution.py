"""Post-execution git actions: commit, push and open a merge request."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from codeflow.job_runtime.errors import GitError
from codeflow.job_runtime.models.job import GitBranchWorkflowResult, PostExecutionResult

if TYPE_CHECKING:
    from codeflow.job_runtime.git.commands import GitRepository
    from codeflow.job_runtime.git.providers import MergeRequestClient
    from codeflow.job_runtime.models.workspace import Workspace

logger = logging.getLogger(__name__)

MERGE_REQUEST_TITLE = "Automated changes from Claude Code"


def commit_message(question: str, timestamp: str) -> str:
    summary = question.strip().splitlines()[0][:200] if question.strip() else ""
    message = f"Automated changes via Claude Code - {timestamp}"
    if summary:
        message += f"\n\nRequest: {summary}"
    return message


def merge_request_description(commit_hash: str, timestamp: str, question: str) -> str:
    return (
        "## Automated Changes\n\n"
        "This merge request contains automated changes made by Claude Code.\n\n"
        "### Details\n"
        f"- **Commit:** `{commit_hash}`\n"
        f"- **Timestamp:** {timestamp}\n\n"
        "### Original Request\n"
        f"{question.strip()}\n"
    )


async def commit_and_maybe_open_request(
    workspace: Workspace,
    workflow: GitBranchWorkflowResult,
    question: str,
    *,
    git: GitRepository,
    merge_requests: MergeRequestClient | None,
) -> PostExecutionResult:
    """Commit whatever Claude changed and publish it.

    With ``merge_request_required`` the working branch is pushed and a
    merge/pull request against the target branch is opened; otherwise the
    commit is pushed to the branch it was made on.  Any failure raises
    ``GitError`` so the job fails instead of reporting half a success.
    """
    if not await git.has_uncommitted_changes():
        logger.info("No changes to commit in workspace %s", workspace.id)
        return PostExecutionResult(has_changes=False)

    timestamp = datetime.now(UTC).isoformat()
    branch = workflow.source_branch
    try:
        await git.add_all()
        commit_hash = await git.commit(commit_message(question, timestamp))
    except GitError as exc:
        msg = f"Failed to commit changes on branch {branch}: {exc}"
        raise GitError(msg) from exc
    logger.info("Committed %s on %s in workspace %s", commit_hash[:12], branch, workspace.id)

    try:
        await git.push(branch)
    except GitError as exc:
        msg = f"Failed to push branch {branch} (commit {commit_hash[:12]} is local only): {exc}"
        raise GitError(msg) from exc

    if not workflow.merge_request_required:
        return PostExecutionResult(has_changes=True, commit_hash=commit_hash, pushed_branch=branch)

    if merge_requests is None:
        msg = f"Branch {branch} was pushed but no merge request client is configured"
        raise GitError(msg)
    url = await merge_requests.open(
        workspace.repo_url,
        branch,
        workflow.target_branch,
        MERGE_REQUEST_TITLE,
        merge_request_description(commit_hash, timestamp, question),
    )
    logger.info("Opened merge request %s for workspace %s", url, workspace.id)
    return PostExecutionResult(
        has_changes=True,
        commit_hash=commit_hash,
        merge_request_url=url,
        pushed_branch=branch,
    )
