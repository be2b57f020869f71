"""Workspace operations: clone, lookup, branches, git config and removal.

Encapsulates everything that touches both the workspace index and the
workspace directory, so the two never drift apart.
"""

from __future__ import annotations

import shutil
from functools import partial
from pathlib import Path

from anyio import to_thread
from loguru import logger

from codeflow.job_runtime.errors import DuplicateWorkspaceError, GitError, ValidationError, WorkspaceNotFoundError
from codeflow.job_runtime.git.commands import GitRepository
from codeflow.job_runtime.git.providers import authenticated_url, detect_provider
from codeflow.job_runtime.models.api import WorkspaceClone, WorkspaceGitConfigUpdate, WorkspaceUpdate
from codeflow.job_runtime.models.enums import GitProvider
from codeflow.job_runtime.models.workspace import (
    Workspace,
    WorkspaceGitConfig,
    WorkspaceMetadata,
    new_workspace_id,
    utcnow,
)
from codeflow.job_runtime.settings import CodeflowSettings
from codeflow.job_runtime.store.base import WorkspaceStore

_VALID_URL_PREFIXES = ("https://", "http://", "git@", "ssh://", "file://")

_GIT_CONFIG_KEYS = {
    "user_email": "user.email",
    "user_name": "user.name",
    "signing_key": "user.signingkey",
}


def _clone_url(repo_url: str, settings: CodeflowSettings) -> str:
    provider = detect_provider(repo_url)
    if provider is GitProvider.GITLAB and settings.gitlab_token:
        return authenticated_url(repo_url, username="oauth2", token=settings.gitlab_token.get_secret_value())
    if provider is GitProvider.GITHUB and settings.github_token:
        return authenticated_url(
            repo_url, username="x-access-token", token=settings.github_token.get_secret_value()
        )
    return repo_url


async def clone_workspace(store: WorkspaceStore, body: WorkspaceClone, settings: CodeflowSettings) -> Workspace:
    """Clone a repository into a new workspace.

    Raises ``ValidationError`` for unsupported URLs, ``DuplicateWorkspaceError``
    when the same repository/branch pair is already cloned and ``GitError``
    when the clone fails.
    """
    if not body.repo_url.startswith(_VALID_URL_PREFIXES):
        msg = f"Invalid Git repository URL: {body.repo_url}"
        raise ValidationError(msg)

    for existing in await store.list():
        if existing.repo_url == body.repo_url and (
            body.target_branch is None or existing.target_branch == body.target_branch
        ):
            msg = (
                f"Workspace already exists for {body.repo_url} on branch {existing.target_branch} "
                f"(ID: {existing.id}). Use the existing workspace or delete it first."
            )
            raise DuplicateWorkspaceError(msg)

    workspace_id = new_workspace_id()
    base_dir = Path(settings.data_root) / "workspaces"
    path = base_dir / f"workspace-{workspace_id}"
    await to_thread.run_sync(partial(base_dir.mkdir, parents=True, exist_ok=True))

    logger.info("Cloning {} into {}", body.repo_url, path)
    try:
        git = await GitRepository.clone(
            _clone_url(body.repo_url, settings),
            path,
            branch=body.target_branch,
            depth=settings.clone_depth,
            timeout=settings.git_timeout_seconds,
        )
        branch = await git.current_branch()
        commit_hash = await git.current_commit_hash()
    except GitError as exc:
        await to_thread.run_sync(partial(shutil.rmtree, path, ignore_errors=True))
        msg = f"Failed to clone {body.repo_url}: {exc}"
        raise GitError(msg) from exc

    workspace = Workspace(
        id=workspace_id,
        path=str(path),
        repo_url=body.repo_url,
        target_branch=branch,
        metadata=WorkspaceMetadata(commit_hash=commit_hash, tags=body.tags),
    )
    await store.save(workspace)
    logger.info("Workspace {} ready ({} @ {})", workspace_id, branch, commit_hash[:12])
    return workspace


async def get_workspace(store: WorkspaceStore, workspace_id: str) -> Workspace:
    """Get a workspace and bump ``last_accessed``.  Raises ``WorkspaceNotFoundError``."""
    if await store.get(workspace_id) is None:
        raise WorkspaceNotFoundError(workspace_id)
    return await store.update(workspace_id, {"last_accessed": utcnow()})


async def list_workspaces(store: WorkspaceStore) -> list[Workspace]:
    """All workspaces, most recently accessed first."""
    return await store.list()


async def update_git_config(
    store: WorkspaceStore,
    workspace_id: str,
    body: WorkspaceGitConfigUpdate,
    *,
    timeout: float | None = None,
) -> Workspace:
    """Apply ``git config user.*`` in the clone and record it on the workspace."""
    workspace = await store.get(workspace_id)
    if workspace is None:
        raise WorkspaceNotFoundError(workspace_id)

    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        return workspace

    git = GitRepository(workspace.path, timeout=timeout)
    for field_name, value in changes.items():
        await git.set_config(_GIT_CONFIG_KEYS[field_name], value)

    current = workspace.metadata.git_config or WorkspaceGitConfig()
    merged = current.model_copy(update=changes)
    return await store.update(workspace_id, {"metadata": {"git_config": merged.model_dump()}})


async def remove_workspace(store: WorkspaceStore, workspace_id: str) -> None:
    """Delete the workspace directory and its record.

    Directory removal is best-effort: a failure is logged and the record is
    deleted anyway, so the index never points at a workspace that cannot be
    used.
    """
    workspace = await store.get(workspace_id)
    if workspace is None:
        raise WorkspaceNotFoundError(workspace_id)

    try:
        await to_thread.run_sync(partial(_remove_tree, Path(workspace.path)))
    except OSError:
        logger.exception("Could not remove directory {} of workspace {}", workspace.path, workspace_id)

    await store.delete(workspace_id)
    logger.info("Workspace {} deleted", workspace_id)


def _remove_tree(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)


async def update_target_branch(
    store: WorkspaceStore,
    workspace_id: str,
    body: WorkspaceUpdate,
    *,
    timeout: float | None = None,
) -> Workspace:
    """Point the workspace at another target branch.

    The branch must exist locally or on ``origin``.  The checkout itself is
    left to the next job's workflow initialisation.
    """
    workspace = await store.get(workspace_id)
    if workspace is None:
        raise WorkspaceNotFoundError(workspace_id)
    if body.target_branch == workspace.target_branch:
        return workspace

    git = GitRepository(workspace.path, timeout=timeout)
    known = set(await git.local_branches()) | set(await git.remote_branches())
    if body.target_branch not in known:
        msg = f"Branch '{body.target_branch}' does not exist in workspace {workspace_id}"
        raise ValidationError(msg)

    logger.info("Workspace {}: target branch {} -> {}", workspace_id, workspace.target_branch, body.target_branch)
    return await store.update(workspace_id, {"target_branch": body.target_branch, "last_accessed": utcnow()})


async def list_branches(store: WorkspaceStore, workspace_id: str, *, timeout: float | None = None) -> list[str]:
    """Local and remote branch names, deduplicated.

    The target branch comes first when it exists; the rest are sorted.
    """
    workspace = await store.get(workspace_id)
    if workspace is None:
        raise WorkspaceNotFoundError(workspace_id)

    git = GitRepository(workspace.path, timeout=timeout)
    branches = set(await git.local_branches()) | set(await git.remote_branches())
    target = workspace.target_branch
    if target in branches:
        return [target, *sorted(branches - {target})]
    return sorted(branches)
