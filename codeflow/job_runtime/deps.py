"""FastAPI dependency injection for the runtime singletons and API auth.

Usage in route handlers::

    @router.get("/jobs/{job_id}")
    async def get_job(job_id: str, queue: Queue) -> Job:
        ...

The singletons are built once in the app lifespan and stored on
``app.state``.  Dependencies raise HTTP 503 if one is missing (lifespan not
run or startup failed part-way).
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from loguru import logger

from codeflow.job_runtime.auth import ApiKeyStore, RateLimiter, key_fingerprint
from codeflow.job_runtime.errors import RateLimitedError
from codeflow.job_runtime.queue import JobQueue
from codeflow.job_runtime.settings import CodeflowSettings
from codeflow.job_runtime.store.base import WorkspaceStore

API_KEY_HEADER = "x-api-key"


def _state(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service not ready ({name} is not initialised).",
        )
    return value


async def get_queue(request: Request) -> JobQueue:
    return _state(request, "queue")


async def get_workspace_store(request: Request) -> WorkspaceStore:
    return _state(request, "workspaces")


async def get_runtime_settings(request: Request) -> CodeflowSettings:
    return _state(request, "settings")


def _extract_key(request: Request) -> str | None:
    key = request.headers.get(API_KEY_HEADER)
    if key:
        return key
    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


async def require_api_key(request: Request) -> str:
    """Authenticate the request and count it against the rate limit.

    Accepts ``x-api-key: <key>`` or ``Authorization: Bearer <key>``.  Returns
    the key fingerprint (safe to log).
    """
    key_store: ApiKeyStore = _state(request, "api_keys")
    limiter: RateLimiter = _state(request, "rate_limiter")

    key = _extract_key(request)
    if not key or not key_store.verify(key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    fingerprint = key_fingerprint(key)
    try:
        limiter.hit(fingerprint)
    except RateLimitedError as exc:
        logger.warning("Rate limit exceeded for key {}", fingerprint)
        raise HTTPException(
            status_code=exc.status_code,
            detail=str(exc),
            headers={"Retry-After": str(int(exc.retry_after) + 1)},
        ) from exc
    return fingerprint


# -- Annotated type aliases for concise route signatures ---------------------

Queue = Annotated[JobQueue, Depends(get_queue)]
"""Annotated dependency: the shared job queue."""

Workspaces = Annotated[WorkspaceStore, Depends(get_workspace_store)]
"""Annotated dependency: the workspace index."""

Settings = Annotated[CodeflowSettings, Depends(get_runtime_settings)]
"""Annotated dependency: the settings the app was started with."""

ApiKey = Annotated[str, Depends(require_api_key)]
"""Annotated dependency: fingerprint of the authenticated API key."""
