"""Async git command layer.

Every operation shells out to the ``git`` binary with
``asyncio.create_subprocess_exec`` so the event loop keeps serving requests
while clones, pulls and pushes wait on the network.  Failures raise
``GitError`` carrying git's stderr; nothing here returns partial results.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path

from loguru import logger

from codeflow.job_runtime.errors import GitError

# Never block on a credential prompt; fail the command instead.
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C"}


async def run_git(
    *args: str,
    cwd: str | Path | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> tuple[str, str]:
    """Run ``git *args`` and return ``(stdout, stderr)`` stripped.

    Raises ``GitError`` when the exit code is non-zero (unless ``check`` is
    false) or the command outlives ``timeout`` seconds.
    """
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env={**os.environ, **_GIT_ENV},
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        msg = f"git {args[0]} timed out after {timeout}s"
        raise GitError(msg) from None
    finally:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    stdout_str = stdout.decode(errors="replace").strip()
    stderr_str = stderr.decode(errors="replace").strip()

    if check and proc.returncode != 0:
        raise GitError(stderr_str or f"git {args[0]} failed with code {proc.returncode}")

    return stdout_str, stderr_str


class GitRepository:
    """Git operations over one working directory."""

    def __init__(self, path: str | Path, *, timeout: float | None = None) -> None:
        self.path = Path(path)
        self.timeout = timeout

    async def _git(self, *args: str, check: bool = True) -> tuple[str, str]:
        return await run_git(*args, cwd=self.path, check=check, timeout=self.timeout)

    # -- Clone -----------------------------------------------------------------

    @classmethod
    async def clone(
        cls,
        url: str,
        destination: str | Path,
        *,
        branch: str | None = None,
        depth: int | None = None,
        timeout: float | None = None,
    ) -> GitRepository:
        args = ["clone"]
        if depth:
            args += ["--depth", str(depth), "--no-single-branch"]
        if branch:
            args += ["--branch", branch]
        args += [url, str(destination)]
        await run_git(*args, timeout=timeout)
        return cls(destination, timeout=timeout)

    # -- Query -----------------------------------------------------------------

    async def current_branch(self) -> str:
        stdout, _ = await self._git("rev-parse", "--abbrev-ref", "HEAD")
        return stdout

    async def current_commit_hash(self) -> str:
        stdout, _ = await self._git("rev-parse", "HEAD")
        return stdout

    async def local_branches(self) -> list[str]:
        stdout, _ = await self._git("for-each-ref", "--format=%(refname:short)", "refs/heads")
        return [line for line in stdout.splitlines() if line]

    async def remote_branches(self) -> list[str]:
        """Branch names that exist on ``origin`` right now (network call)."""
        stdout, _ = await self._git("ls-remote", "--heads", "origin")
        branches = []
        for line in stdout.splitlines():
            _, _, ref = line.partition("\t")
            if ref.startswith("refs/heads/"):
                branches.append(ref.removeprefix("refs/heads/"))
        return branches

    async def default_branch(self) -> str:
        """Branch ``origin/HEAD`` points at.

        Falls back to probing ``main`` then ``master`` when the remote does not
        advertise its HEAD.
        """
        stdout, _ = await self._git("remote", "show", "origin", check=False)
        for line in stdout.splitlines():
            line = line.strip()
            if line.startswith("HEAD branch:"):
                name = line.removeprefix("HEAD branch:").strip()
                if name and name != "(unknown)":
                    return name

        remote = await self.remote_branches()
        for candidate in ("main", "master"):
            if candidate in remote:
                return candidate

        msg = f"Could not determine the default branch of {self.path}"
        raise GitError(msg)

    async def has_uncommitted_changes(self) -> bool:
        stdout, _ = await self._git("status", "--porcelain")
        return bool(stdout)

    # -- Branches --------------------------------------------------------------

    async def switch_branch(self, branch: str) -> None:
        """Check out ``branch``.

        A branch that only exists on ``origin`` is fetched and checked out as a
        tracking branch; a branch that exists nowhere is created from HEAD.
        """
        if branch in await self.local_branches():
            await self._git("checkout", branch)
            return

        if branch in await self.remote_branches():
            await self._git("fetch", "origin", f"+refs/heads/{branch}:refs/remotes/origin/{branch}")
            await self._git("checkout", "-b", branch, "--track", f"origin/{branch}")
            return

        await self.create_branch(branch)

    async def create_branch(self, branch: str) -> None:
        await self._git("checkout", "-b", branch)

    async def pull(self, branch: str | None = None) -> None:
        if branch is None:
            await self._git("pull", "--ff-only")
        else:
            await self._git("pull", "--ff-only", "origin", branch)

    async def clean_branches(self, keep: str) -> list[str]:
        """Delete local branches that are gone from ``origin``.

        The current branch and ``keep`` are never touched.  Individual delete
        failures are logged and skipped.  Returns the deleted branch names.
        """
        current = await self.current_branch()
        remote = set(await self.remote_branches())
        deleted = []
        for branch in await self.local_branches():
            if branch in (current, keep) or branch in remote:
                continue
            try:
                await self._git("branch", "-D", branch)
            except GitError as exc:
                logger.warning("Could not delete stale branch {} in {}: {}", branch, self.path, exc)
                continue
            deleted.append(branch)
        if deleted:
            logger.info("Cleaned {} stale branches in {}: {}", len(deleted), self.path, ", ".join(deleted))
        return deleted

    # -- Commit / push ---------------------------------------------------------

    async def add_all(self) -> None:
        await self._git("add", ".")

    async def commit(self, message: str) -> str:
        """Commit the index and return the new commit hash."""
        await self._git("commit", "-m", message)
        return await self.current_commit_hash()

    async def push(self, branch: str, *, set_upstream: bool = True) -> None:
        args = ["push"]
        if set_upstream:
            args.append("-u")
        await self._git(*args, "origin", branch)

    # -- Config ----------------------------------------------------------------

    async def set_config(self, key: str, value: str) -> None:
        await self._git("config", key, value)
