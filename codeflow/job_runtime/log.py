"""loguru setup for the codeflow service.

The execution modules log through ``logging.getLogger``; uvicorn and httpx
do too.  All of it is routed into loguru so one stderr sink (and the
optional rotating ``log_file``) carries every job's trail.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> "
    "<level>{level: <7}</level> "
    "<cyan>{name}:{line}</cyan> | "
    "<level>{message}</level>"
)
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def _caller_depth() -> int:
    frame, depth = logging.currentframe(), 2
    while frame is not None and frame.f_code.co_filename == logging.__file__:
        frame = frame.f_back
        depth += 1
    return depth


class _LoguruBridge(logging.Handler):
    """Re-emit stdlib records through loguru at the original call site."""

    def emit(self, record: logging.LogRecord) -> None:
        level: str | int
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=_caller_depth(), exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Install the sinks.  Calling it again replaces them."""
    level = level.upper()
    sinks: list[dict[str, Any]] = [{"sink": sys.stderr, "level": level, "format": LOG_FORMAT}]
    if log_file:
        sinks.append(
            {
                "sink": log_file,
                "level": level,
                "format": LOG_FORMAT,
                "rotation": "10 MB",
                "retention": 5,
                "enqueue": True,
            }
        )
    logger.configure(handlers=sinks)

    logging.basicConfig(handlers=[_LoguruBridge()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging ready: level={} file={}", level, log_file or "-")
