"""Centralized Loguru logging setup.

Keeps logging configuration consistent across modules. Semantic levels are
registered on import so engine code can log with them even when the host
never calls `setup_logging()` (tests, embedding in another app).
"""

from __future__ import annotations

from loguru import logger
import os
import sys


# name -> (severity, color)
_LEVELS = {
    "CHAT": (21, "<cyan>"),
    "BUFFER": (21, "<cyan>"),
    "SELECT": (22, "<magenta>"),
    "REPLY": (24, "<yellow>"),
    "TWITCH": (25, "<blue>"),
    "CYCLE": (26, "<blue>"),
}


def _ensure_level(name: str, no: int, color: str) -> None:
    try:
        logger.level(name)
    except ValueError:
        logger.level(name, no=no, color=color)


def register_levels() -> None:
    """Register the custom semantic levels (idempotent)."""
    for name, (no, color) in _LEVELS.items():
        _ensure_level(name, no, color)


def setup_logging() -> None:
    """Configure Loguru sinks and levels.

    - Logs to stderr with a concise format suitable for dev.
    - Respects `LOG_LEVEL` env var (default: INFO).
    - Avoid duplicate handlers if called multiple times.
    """
    logger.remove()

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    register_levels()

    logger.add(
        sys.stderr,
        level=log_level,
        backtrace=False,
        diagnose=False,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        colorize=True,
    )


register_levels()
