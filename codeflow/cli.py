import click


@click.group()
def main() -> None:
    """Codeflow - run Claude Code jobs against git workspaces."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from CODEFLOW_HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Bind port (default: from CODEFLOW_PORT or 8000).")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload for development.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the job runtime server."""
    import uvicorn

    from codeflow.job_runtime.settings import CodeflowSettings

    settings = CodeflowSettings()

    uvicorn.run(
        "codeflow.job_runtime.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
        # Running jobs get graceful_shutdown_timeout to drain; the extra 60s
        # covers cancellation and closing the HTTP client.
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout + 60,
    )


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


def _key_store():
    from codeflow.job_runtime.auth import ApiKeyStore
    from codeflow.job_runtime.settings import CodeflowSettings

    return ApiKeyStore(CodeflowSettings().resolve_api_keys_file())


@main.group()
def keys() -> None:
    """API key management."""


@keys.command()
@click.option("--name", required=True, help="Label stored next to the key hash.")
def generate(name: str) -> None:
    """Create a new API key.  The key is printed once and stored hashed."""
    import anyio

    store = _key_store()
    key = anyio.run(store.generate, name)
    click.echo(key)
    click.echo(f"Stored hash in {store.path}. Keep the key above; it cannot be shown again.", err=True)


@keys.command()
def migrate() -> None:
    """Hash plaintext entries left in the API key file."""
    import anyio

    store = _key_store()
    migrated = anyio.run(store.migrate)
    click.echo(f"Migrated {migrated} plaintext keys in {store.path}.")


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


@main.command("claude-status")
def claude_status() -> None:
    """Check that the Claude CLI is installed and answers ``--version``."""
    import anyio

    from codeflow.job_runtime.execution.claude import check_claude_availability
    from codeflow.job_runtime.settings import CodeflowSettings

    availability = anyio.run(check_claude_availability, CodeflowSettings())
    if availability.available:
        click.echo(f"Claude CLI available: {availability.version}")
        return
    click.echo(f"Claude CLI unavailable: {availability.error}", err=True)
    raise SystemExit(1)
