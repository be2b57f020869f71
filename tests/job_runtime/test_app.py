"""Lifespan wiring: every startup builds fresh runtime objects."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from codeflow.job_runtime.app import app, lifespan

STATE_NAMES = ("settings", "api_keys", "rate_limiter", "workspaces", "registry", "queue")


@pytest.fixture
def runtime_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("CODEFLOW_DATA_ROOT", str(tmp_path / "data"))
    monkeypatch.setenv("CODEFLOW_AUTH_TOKEN", "test-token")
    monkeypatch.setenv("CODEFLOW_WORKER_POLL_INTERVAL", "0.05")
    yield
    for name in STATE_NAMES:
        setattr(app.state, name, None)


async def test_lifespan_can_start_twice(runtime_env: None) -> None:
    registries = []
    for _ in range(2):
        async with lifespan(app):
            registry = app.state.registry
            assert registry.is_shutting_down is False
            assert registry.active_count == 0
            registries.append(registry)
        assert registry.is_shutting_down is True

    assert registries[0] is not registries[1]
