from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from loguru import logger
from pydantic import SecretStr

from codeflow.job_runtime.auth import ApiKeyStore, RateLimiter
from codeflow.job_runtime.callbacks import CallbackSender
from codeflow.job_runtime.deps import require_api_key
from codeflow.job_runtime.errors import CodeflowError
from codeflow.job_runtime.execution.pipeline import ClaudeCodePipeline, WorkspaceCleanupPipeline
from codeflow.job_runtime.git.providers import MergeRequestClient
from codeflow.job_runtime.log import setup_logging
from codeflow.job_runtime.models.enums import JobType
from codeflow.job_runtime.queue import JobQueue
from codeflow.job_runtime.registry import ExecutionRegistry
from codeflow.job_runtime.settings import CodeflowSettings, get_settings
from codeflow.job_runtime.store.local import LocalJobStore, LocalWorkspaceStore


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


def create_queue(
    settings: CodeflowSettings,
    *,
    workspaces: LocalWorkspaceStore,
    jobs: LocalJobStore,
    registry: ExecutionRegistry,
    http: httpx.AsyncClient,
) -> JobQueue:
    """Wire the job handlers and build the queue."""
    merge_requests = MergeRequestClient(
        http,
        gitlab_url=settings.gitlab_url,
        gitlab_token=_secret(settings.gitlab_token),
        github_api_url=settings.github_api_url,
        github_token=_secret(settings.github_token),
    )
    handlers = {
        JobType.CLAUDE_CODE: ClaudeCodePipeline(
            settings=settings,
            workspaces=workspaces,
            registry=registry,
            merge_requests=merge_requests,
        ),
        JobType.WORKSPACE_CLEANUP: WorkspaceCleanupPipeline(workspaces=workspaces, registry=registry),
    }
    return JobQueue(
        jobs,
        handlers,
        registry,
        max_concurrent=settings.max_concurrent_jobs,
        poll_interval=settings.worker_poll_interval,
        retention_days=settings.job_retention_days,
        cleanup_every=settings.cleanup_every,
        callbacks=CallbackSender(http, timeout=settings.callback_timeout_seconds),
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file)

    auth_token = settings.resolve_auth_token()
    if not settings.auth_token:
        logger.warning("No CODEFLOW_AUTH_TOKEN set -- generated token: {}", auth_token)

    logger.info("Codeflow runtime starting (host={}, port={})", settings.host, settings.port)
    logger.info("Data root: {}", settings.data_root)

    # -- Auth ------------------------------------------------------------------
    api_keys = ApiKeyStore(settings.resolve_api_keys_file(), extra_keys=[auth_token, *settings.api_keys])
    await api_keys.migrate()
    loaded = await api_keys.load()
    logger.info("API keys: {} stored keys loaded from {}", loaded, api_keys.path)

    # -- Stores and queue ------------------------------------------------------
    workspaces = LocalWorkspaceStore(settings.data_root)
    jobs = LocalJobStore(settings.data_root)
    registry = ExecutionRegistry()
    http = httpx.AsyncClient()
    queue = create_queue(settings, workspaces=workspaces, jobs=jobs, registry=registry, http=http)

    _app.state.settings = settings
    _app.state.api_keys = api_keys
    _app.state.rate_limiter = RateLimiter(settings.rate_limit_per_hour, settings.rate_limit_window_seconds)
    _app.state.workspaces = workspaces
    _app.state.registry = registry
    _app.state.queue = queue

    # Startup recovery: jobs left in processing by a previous process.
    recovered = await queue.initialize()
    if recovered > 0:
        logger.info("Startup recovery: {} orphaned jobs marked as failed", recovered)
    queue.start()

    yield

    # -- Shutdown --------------------------------------------------------------
    logger.info("Codeflow runtime shutting down (active_jobs={})", registry.active_count)

    # 1. Stop claiming queued jobs and refuse new immediate runs.
    await queue.stop()
    registry.begin_shutdown()

    # 2. Wait for running jobs to complete naturally.
    if registry.active_count > 0:
        timeout = settings.graceful_shutdown_timeout
        logger.info("Waiting for {} active jobs to finish (timeout={}s)...", registry.active_count, timeout)
        drained = await registry.wait_until_drained(timeout=timeout)
        if not drained:
            # Last resort: cancel; each cancelled job is recorded as failed.
            cancelled = registry.cancel_all()
            logger.warning("Cancelled {} jobs after timeout", cancelled)
            await registry.wait_until_drained(timeout=5.0)

    await queue.drain_callbacks(timeout=settings.callback_timeout_seconds)
    await http.aclose()
    logger.info("HTTP client: closed")


app = FastAPI(title="Codeflow Job Runtime", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Error translation -- domain exceptions carry their own status code
# ---------------------------------------------------------------------------


@app.exception_handler(CodeflowError)
async def codeflow_error_handler(_request: Request, exc: CodeflowError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# ---------------------------------------------------------------------------
# API router -- all backend endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


# -- Authenticated routers ---------------------------------------------------
from codeflow.job_runtime.routers.claude import router as claude_router  # noqa: E402
from codeflow.job_runtime.routers.history import router as history_router  # noqa: E402
from codeflow.job_runtime.routers.jobs import router as jobs_router  # noqa: E402
from codeflow.job_runtime.routers.operations import router as operations_router  # noqa: E402
from codeflow.job_runtime.routers.queue import router as queue_router  # noqa: E402
from codeflow.job_runtime.routers.workspaces import router as workspaces_router  # noqa: E402

_authenticated = [Depends(require_api_key)]

api.include_router(operations_router, dependencies=_authenticated)
api.include_router(jobs_router, dependencies=_authenticated)
api.include_router(queue_router, dependencies=_authenticated)
api.include_router(history_router, dependencies=_authenticated)
api.include_router(workspaces_router, dependencies=_authenticated)
api.include_router(claude_router, dependencies=_authenticated)

app.include_router(api)
