import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from loguru import logger

from codeflow.job_runtime.log import setup_logging


@pytest.fixture
def log_file(tmp_path: Path) -> Iterator[Path]:
    path = tmp_path / "codeflow.log"
    setup_logging("debug", str(path))
    yield path
    setup_logging()


def test_stdlib_records_reach_loguru_sinks(log_file: Path) -> None:
    logging.getLogger("codeflow.job_runtime.execution.claude").warning("run in %s timed out", "/ws/a")
    logging.getLogger("httpx").info("HTTP Request: POST https://hooks.example.com")
    logger.complete()

    text = log_file.read_text()
    assert "run in /ws/a timed out" in text
    assert "WARNING" in text
    assert "Logging ready: level=DEBUG" in text
    assert "hooks.example.com" not in text
