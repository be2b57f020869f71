"""Claude CLI execution adapter.

Runs ``claude -p <prompt> --output-format stream-json`` as a child process
in a workspace directory and turns its output into a ``ClaudeRunResult``:

1. **Probe**: ``shutil.which`` on the executable, so a missing binary fails in
   milliseconds instead of after the full timeout
2. **Spawn**: own process group, workspace as CWD, credentials injected
   according to ``claude_auth_mode``
3. **Stream**: stdout is consumed line by line; JSON lines are kept as
   ``json_logs``, the final ``result`` event supplies text, usage and cost
4. **Reap**: on success, failure, timeout or cancellation the process group
   is killed (if still alive) and waited for before the call returns

Failures are raised as ``UnavailableError``, ``ExecutionTimeoutError`` or
``ProcessError``; the queue records them on the job.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shutil
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from codeflow.job_runtime.errors import (
    ExecutionTimeoutError,
    NotFoundError,
    ProcessError,
    UnavailableError,
)
from codeflow.job_runtime.models.enums import ClaudeEventType
from codeflow.job_runtime.models.job import ClaudeUsage

if TYPE_CHECKING:
    from codeflow.job_runtime.settings import CodeflowSettings

logger = logging.getLogger(__name__)

WRAPPER_LOG_PREFIX = "[CLAUDE-WRAPPER]"
NO_OUTPUT_MESSAGE = "Claude Code executed successfully but produced no output"
WORKSPACE_CONFINEMENT = (
    "IMPORTANT: Only work within the current workspace directory. Do not access files outside this workspace."
)

# stream-json lines carry whole tool results; asyncio's 64 KiB default is too small.
_STREAM_LIMIT = 16 * 1024 * 1024


# ---------------------------------------------------------------------------
# Options / results
# ---------------------------------------------------------------------------


@dataclass
class ClaudeRunOptions:
    working_directory: str
    question: str
    context: str | None = None
    source_branch: str | None = None
    edit_request: bool = False
    timeout: float | None = None
    """Seconds; ``None`` uses ``claude_timeout_seconds``."""


@dataclass
class ClaudeRunResult:
    output: str
    raw_output: str
    json_logs: list[dict[str, Any]] = field(default_factory=list)
    execution_time_ms: int = 0
    usage: ClaudeUsage | None = None
    subtype: str | None = None


@dataclass
class ClaudeAvailability:
    available: bool
    version: str | None = None
    error: str | None = None


@dataclass
class _StreamState:
    stdout_lines: list[str] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    result_text: str | None = None
    subtype: str | None = None
    duration_ms: int | None = None
    usage: ClaudeUsage | None = None


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


def build_prompt(question: str, context: str | None = None, *, edit_request: bool = False) -> str:
    prompt = question
    if context:
        prompt += f"\n\nContext: {context}"
    if edit_request:
        prompt += f"\n\n{WORKSPACE_CONFINEMENT}"
    return prompt


def build_command(settings: CodeflowSettings, working_directory: str, prompt: str) -> list[str]:
    """argv for one run.  A configured wrapper receives the workspace first."""
    args = [settings.claude_command, "--verbose"]
    if settings.claude_skip_permissions:
        args.append("--dangerously-skip-permissions")
    args += ["-p", prompt, "--output-format", "stream-json"]
    if settings.claude_wrapper:
        return [settings.claude_wrapper, working_directory, *args]
    return args


def build_environment(settings: CodeflowSettings) -> dict[str, str]:
    env = {**os.environ, "TERM": "dumb", "NO_COLOR": "1"}
    # A nested CLI refuses to start when it thinks it runs inside another session.
    env.pop("CLAUDECODE", None)

    key = settings.anthropic_api_key.get_secret_value() if settings.anthropic_api_key else None
    if settings.claude_auth_mode == "cli":
        env.pop("ANTHROPIC_API_KEY", None)
    elif key:
        env["ANTHROPIC_API_KEY"] = key
    elif settings.claude_auth_mode == "api_key" and not env.get("ANTHROPIC_API_KEY"):
        msg = "claude_auth_mode is 'api_key' but no ANTHROPIC_API_KEY is configured"
        raise UnavailableError(msg)
    return env


# ---------------------------------------------------------------------------
# Stream parsing
# ---------------------------------------------------------------------------


def parse_stream_line(line: str) -> dict[str, Any] | None:
    """Parse one stdout line; ``None`` for wrapper chatter and plain text."""
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def extract_usage(result_event: dict[str, Any]) -> ClaudeUsage | None:
    usage = result_event.get("usage")
    cost = result_event.get("total_cost_usd", result_event.get("cost_usd"))
    if not isinstance(usage, dict) and cost is None:
        return None
    usage = usage if isinstance(usage, dict) else {}
    return ClaudeUsage(
        input_tokens=usage.get("input_tokens") or 0,
        output_tokens=usage.get("output_tokens") or 0,
        cache_creation_input_tokens=usage.get("cache_creation_input_tokens") or 0,
        cache_read_input_tokens=usage.get("cache_read_input_tokens") or 0,
        cost_usd=cost,
    )


def _apply_event(state: _StreamState, event: dict[str, Any]) -> None:
    state.events.append(event)
    event_type = event.get("type")
    if event_type == ClaudeEventType.RESULT:
        state.subtype = event.get("subtype")
        state.duration_ms = event.get("duration_ms")
        if isinstance(event.get("result"), str):
            state.result_text = event["result"]
        state.usage = extract_usage(event)
        logger.info("Claude result: subtype=%s duration_ms=%s", state.subtype, state.duration_ms)
    elif event_type == ClaudeEventType.ASSISTANT:
        content = (event.get("message") or {}).get("content") or []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_use":
                logger.debug("Claude tool use: %s", block.get("name"))


async def _consume_stdout(stream: asyncio.StreamReader, state: _StreamState) -> None:
    async for raw in stream:
        line = raw.decode(errors="replace").rstrip("\n")
        if line.startswith(WRAPPER_LOG_PREFIX):
            logger.debug("%s", line)
            continue
        state.stdout_lines.append(line)
        event = parse_stream_line(line)
        if event is not None:
            _apply_event(state, event)


# ---------------------------------------------------------------------------
# Process control
# ---------------------------------------------------------------------------


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()


async def _reap(proc: asyncio.subprocess.Process) -> None:
    """Kill the process group if still running and wait for the exit status."""
    if proc.returncode is None:
        _kill_process_group(proc)
    # Shield so a second cancellation cannot leave a zombie behind.
    await asyncio.shield(proc.wait())


async def run_claude_code(options: ClaudeRunOptions, settings: CodeflowSettings) -> ClaudeRunResult:
    """Run the CLI once against ``options.working_directory``.

    Parameters
    ----------
    options:
        Prompt inputs, workspace directory and timeout.
    settings:
        Supplies the command, wrapper, auth mode and default timeout.

    Returns
    -------
    ClaudeRunResult
        Final text plus raw stdout and every parsed stream event.
    """
    workdir = Path(options.working_directory)
    if not workdir.is_dir():
        msg = f"Working directory does not exist: {workdir}"
        raise NotFoundError(msg)

    prompt = build_prompt(options.question, options.context, edit_request=options.edit_request)
    argv = build_command(settings, str(workdir), prompt)
    if shutil.which(argv[0]) is None:
        msg = f"Claude CLI not found: {argv[0]!r} is not on PATH"
        raise UnavailableError(msg)
    env = build_environment(settings)
    timeout = options.timeout if options.timeout is not None else settings.claude_timeout_seconds

    logger.info(
        "Claude run starting in %s (branch=%s, edit=%s, timeout=%ss)",
        workdir,
        options.source_branch or "-",
        options.edit_request,
        timeout,
    )
    start = time.monotonic()
    state = _StreamState()
    stderr_chunks: list[bytes] = []

    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=workdir,
        env=env,
        start_new_session=True,
        limit=_STREAM_LIMIT,
    )

    stdout_stream, stderr_stream = proc.stdout, proc.stderr

    async def _read_stderr() -> None:
        stderr_chunks.append(await stderr_stream.read())

    async def _communicate() -> int:
        await asyncio.gather(_consume_stdout(stdout_stream, state), _read_stderr())
        return await proc.wait()

    try:
        returncode = await asyncio.wait_for(_communicate(), timeout=timeout)
    except TimeoutError:
        logger.warning("Claude run in %s timed out after %ss; killing pid %s", workdir, timeout, proc.pid)
        msg = f"Claude Code execution timed out after {timeout}s"
        raise ExecutionTimeoutError(msg) from None
    finally:
        await _reap(proc)

    elapsed_ms = int((time.monotonic() - start) * 1000)
    raw_output = "\n".join(state.stdout_lines)
    stderr = b"".join(stderr_chunks).decode(errors="replace").strip()
    trusted_result = state.subtype == "success" and bool(state.result_text)

    if returncode != 0 and not trusted_result:
        if returncode < 0:
            reason = f"was killed by signal {-returncode}"
        else:
            reason = f"exited with code {returncode}"
        msg = f"Claude Code {reason}"
        if state.subtype:
            msg += f" (result subtype: {state.subtype})"
        if stderr:
            msg += f": {stderr[:500]}"
        logger.error("%s", msg)
        raise ProcessError(msg, exit_code=returncode, stderr=stderr)

    output = state.result_text or raw_output.strip() or stderr or NO_OUTPUT_MESSAGE
    logger.info("Claude run finished in %sms (%s events, exit=%s)", elapsed_ms, len(state.events), returncode)
    return ClaudeRunResult(
        output=output,
        raw_output=raw_output,
        json_logs=state.events,
        execution_time_ms=elapsed_ms,
        usage=state.usage,
        subtype=state.subtype,
    )


async def check_claude_availability(settings: CodeflowSettings) -> ClaudeAvailability:
    """Run ``claude --version`` with a short timeout."""
    if shutil.which(settings.claude_command) is None:
        return ClaudeAvailability(available=False, error=f"{settings.claude_command!r} not found on PATH")

    proc = await asyncio.create_subprocess_exec(
        settings.claude_command,
        "--version",
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(), timeout=settings.claude_availability_timeout_seconds
        )
    except TimeoutError:
        return ClaudeAvailability(
            available=False,
            error=f"'--version' did not answer within {settings.claude_availability_timeout_seconds}s",
        )
    finally:
        await _reap(proc)

    version = stdout.decode(errors="replace").strip()
    if proc.returncode == 0 and version:
        return ClaudeAvailability(available=True, version=version)
    return ClaudeAvailability(
        available=False,
        error=stderr.decode(errors="replace").strip() or f"'--version' exited with code {proc.returncode}",
    )
