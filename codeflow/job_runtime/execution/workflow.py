"""Git workflow initializer.

Decides the branch a job works on before Claude runs:

- **Same branch** (source == target): sync the target branch, prune stale
  local branches, then either switch to the working branch for a merge
  request (``create_mr``), reusing it when an earlier run already pushed it,
  or stay on the target (no-MR mode).
- **Different branch**: the caller is already on a feature branch; check it
  out and pull.

Nothing is rolled back on failure.  Error messages name the branch so the
workspace can be repaired by hand.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from codeflow.job_runtime.errors import GitError, WorkspaceNotFoundError
from codeflow.job_runtime.models.job import GitBranchWorkflowResult
from codeflow.job_runtime.models.workspace import utcnow

if TYPE_CHECKING:
    from codeflow.job_runtime.git.commands import GitRepository
    from codeflow.job_runtime.store.base import WorkspaceStore

logger = logging.getLogger(__name__)


def unique_branch_name(
    source_branch: str,
    task_id: str | None = None,
    new_branch_name: str | None = None,
    *,
    now_ms: int | None = None,
) -> str:
    """``{task}-{name}``, ``{task}-{ts}`` or ``{source}-{ts}`` (ts in epoch ms)."""
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    if task_id and new_branch_name:
        return f"{task_id}-{new_branch_name}"
    if task_id:
        return f"{task_id}-{timestamp}"
    return f"{source_branch}-{timestamp}"


async def _step(description: str, branch: str, action: Awaitable[object]) -> None:
    try:
        await action
    except GitError as exc:
        msg = f"Failed to {description} {branch}: {exc}"
        raise GitError(msg) from exc


async def initialize_git_workflow(
    workspaces: WorkspaceStore,
    workspace_id: str,
    source_branch: str | None,
    *,
    git_factory: Callable[[str], GitRepository],
    task_id: str | None = None,
    new_branch_name: str | None = None,
    create_mr: bool = False,
) -> GitBranchWorkflowResult:
    """Prepare the workspace's branch state and report the decision.

    Raises ``WorkspaceNotFoundError`` for an unknown workspace and
    ``GitError`` for any failing git step.
    """
    workspace = await workspaces.get(workspace_id)
    if workspace is None:
        raise WorkspaceNotFoundError(workspace_id)

    git = git_factory(workspace.path)

    target_branch = workspace.target_branch
    if not target_branch:
        try:
            target_branch = await git.default_branch()
        except GitError as exc:
            msg = f"Could not determine target branch for workspace {workspace_id}: {exc}"
            raise GitError(msg) from exc

    source_branch = source_branch or target_branch

    if source_branch == target_branch:
        await _step("checkout target branch", target_branch, git.switch_branch(target_branch))
        await _step("pull latest changes on", target_branch, git.pull(target_branch))
        await _step("clean stale branches next to", target_branch, git.clean_branches(keep=target_branch))

        if create_mr:
            working_branch = unique_branch_name(source_branch, task_id, new_branch_name)
            await _step("switch to working branch", working_branch, git.switch_branch(working_branch))
            result = GitBranchWorkflowResult(
                merge_request_required=True,
                source_branch=working_branch,
                target_branch=target_branch,
            )
        else:
            result = GitBranchWorkflowResult(
                merge_request_required=False,
                source_branch=source_branch,
                target_branch=target_branch,
            )
    else:
        await _step("checkout source branch", source_branch, git.switch_branch(source_branch))
        await _step("pull latest changes on", source_branch, git.pull(source_branch))
        result = GitBranchWorkflowResult(
            merge_request_required=False,
            source_branch=source_branch,
            target_branch=target_branch,
        )

    commit_hash = await git.current_commit_hash()
    await workspaces.update(workspace_id, {"metadata": {"commit_hash": commit_hash}, "last_accessed": utcnow()})
    logger.info(
        "Git workflow ready for %s: %s -> %s (merge request: %s)",
        workspace_id,
        result.source_branch,
        result.target_branch,
        result.merge_request_required,
    )
    return result

