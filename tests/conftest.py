"""Shared test fixtures: isolated settings, fake Claude CLIs and git repos.

Git-backed tests use the real ``git`` binary against a bare repository in
``tmp_path`` acting as ``origin``; they are skipped when git is missing.
Claude is replaced by small ``/bin/sh`` scripts that print stream-json.
"""

from __future__ import annotations

import shutil
import stat
import subprocess
import textwrap
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from codeflow.job_runtime.settings import CodeflowSettings, _get_settings_cached


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Iterator[None]:
    _get_settings_cached.cache_clear()
    yield
    _get_settings_cached.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> CodeflowSettings:
    """Settings rooted in ``tmp_path`` with short timeouts."""
    return CodeflowSettings(
        data_root=str(tmp_path / "data"),
        auth_token="test-token",
        claude_timeout_seconds=10,
        git_timeout_seconds=30,
        worker_poll_interval=0.05,
        _env_file=None,
    )


# ---------------------------------------------------------------------------
# Fake Claude CLI
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_claude(tmp_path: Path) -> Callable[[str], str]:
    """Write an executable shell script and return its path."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)
    counter = iter(range(1000))

    def _make(body: str) -> str:
        path = bin_dir / f"claude-{next(counter)}"
        path.write_text("#!/bin/sh\n" + textwrap.dedent(body).lstrip())
        path.chmod(path.stat().st_mode | stat.S_IEXEC)
        return str(path)

    return _make


# ---------------------------------------------------------------------------
# Git repositories
# ---------------------------------------------------------------------------


def git(*args: str, cwd: Path | str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)  # noqa: S603, S607
    return result.stdout.strip()


@pytest.fixture
def git_identity(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    for prefix in ("GIT_AUTHOR", "GIT_COMMITTER"):
        monkeypatch.setenv(f"{prefix}_NAME", "Codeflow Test")
        monkeypatch.setenv(f"{prefix}_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(tmp_path / "gitconfig"))


@pytest.fixture
def origin_repo(tmp_path: Path, git_identity: None) -> Path:
    """Bare ``origin`` on ``main`` with one commit."""
    origin = tmp_path / "origin.git"
    git("init", "--bare", "-b", "main", str(origin), cwd=tmp_path)

    seed = tmp_path / "seed"
    git("init", "-b", "main", str(seed), cwd=tmp_path)
    (seed / "README.md").write_text("# demo\n")
    git("add", ".", cwd=seed)
    git("commit", "-m", "initial", cwd=seed)
    git("remote", "add", "origin", str(origin), cwd=seed)
    git("push", "-u", "origin", "main", cwd=seed)
    return origin


@pytest.fixture
def clone_dir(tmp_path: Path, origin_repo: Path) -> Path:
    """Working clone of ``origin_repo``."""
    clone = tmp_path / "clone"
    git("clone", str(origin_repo), str(clone), cwd=tmp_path)
    return clone


@pytest.fixture
def git_cmd(git_identity: None) -> Callable[..., str]:
    """Synchronous ``git`` runner for arranging and inspecting repositories."""
    return git
