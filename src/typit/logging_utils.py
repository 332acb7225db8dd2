"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys

from loguru import logger

_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {name}:{function}:{line} | {message}"
_CONFIGURED = False


def configure_logging(level: str | None = None) -> None:
    """Configure process-level logging once."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    resolved = (level or os.getenv("TYPIT_LOG_LEVEL", "INFO")).upper()
    logger.remove()
    logger.add(
        sys.stderr,
        level=resolved,
        format=_FORMAT,
        backtrace=False,
        diagnose=False,
    )
    _CONFIGURED = True
