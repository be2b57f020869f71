"""Service configuration loaded from CODEFLOW_* environment variables."""

from __future__ import annotations

import secrets
from pathlib import Path
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class CodeflowSettings(BaseSettings):
    """Codeflow job runtime settings.

    All fields are read from environment variables with the ``CODEFLOW_``
    prefix.  For example, ``CODEFLOW_MAX_CONCURRENT_JOBS=3`` maps to
    ``max_concurrent_jobs``.

    The Claude CLI reads its own configuration (``~/.claude``); only the
    credentials injected into its environment are managed here.
    """

    model_config = SettingsConfigDict(
        env_prefix="CODEFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_file: str | None = None
    """Optional rotating log file (10 MB per file, five kept)."""

    # -- Data storage ----------------------------------------------------------
    data_root: str = "./data"
    """Root directory for workspaces, the job store and the API key file.

    Layout::

        {data_root}/workspaces/.workspace-index.json
        {data_root}/workspaces/workspace-{id}/
        {data_root}/jobs/{job_id}.json
        {data_root}/api-keys.json
    """

    clone_depth: int | None = None
    """Shallow clone depth for new workspaces.  ``None`` clones full history."""

    # -- Auth ------------------------------------------------------------------
    auth_token: str | None = None
    """Admin API key.  Auto-generated at startup if empty."""

    api_keys: list[str] = []
    """Additional API keys accepted from the environment (JSON list)."""

    api_keys_file: str | None = None
    """Hashed key file.  Defaults to ``{data_root}/api-keys.json``."""

    rate_limit_per_hour: int = 100
    rate_limit_window_seconds: float = 3600.0

    # -- Queue -----------------------------------------------------------------
    max_concurrent_jobs: int = 2
    """Concurrency limit per job type.  Requests above it are queued."""

    worker_poll_interval: float = 2.0
    """Seconds the worker sleeps between checks when nothing wakes it."""

    job_retention_days: int = 7
    cleanup_every: int = 100
    """Run retention cleanup once every N worker iterations."""

    edit_always_queue: bool = True
    """Edit requests always go through the background worker."""

    callback_timeout_seconds: float = 10.0

    # -- Claude CLI ------------------------------------------------------------
    claude_command: str = "claude"
    claude_wrapper: str | None = None
    """Optional wrapper script invoked as ``wrapper <cwd> <claude args...>``."""

    claude_timeout_seconds: float = 120.0
    claude_availability_timeout_seconds: float = 5.0
    claude_skip_permissions: bool = True
    """Pass ``--dangerously-skip-permissions`` so edits run unattended."""

    claude_auth_mode: Literal["auto", "api_key", "cli"] = "auto"
    """``cli`` strips ANTHROPIC_API_KEY so the CLI's own login is used."""

    anthropic_api_key: SecretStr | None = None

    # -- Git providers ---------------------------------------------------------
    git_timeout_seconds: float = 300.0
    gitlab_url: str = "https://gitlab.com"
    gitlab_token: SecretStr | None = None
    github_api_url: str = "https://api.github.com"
    github_token: SecretStr | None = None

    # -- Server ----------------------------------------------------------------
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8000
    graceful_shutdown_timeout: int = 600
    """Seconds to wait for running jobs to finish during shutdown.

    Jobs still running afterwards are cancelled and recorded as failed.
    uvicorn's ``--timeout-graceful-shutdown`` must be >= this value for the
    wait to be effective.
    """

    # -- Helpers ---------------------------------------------------------------

    def resolve_auth_token(self) -> str:
        """Return the configured token or generate a random one."""
        if self.auth_token:
            return self.auth_token
        return secrets.token_urlsafe(32)

    def resolve_api_keys_file(self) -> Path:
        if self.api_keys_file:
            return Path(self.api_keys_file)
        return Path(self.data_root) / "api-keys.json"


def get_settings() -> CodeflowSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to
    force a re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> CodeflowSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return CodeflowSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
