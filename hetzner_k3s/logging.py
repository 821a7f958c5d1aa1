"""Logging configuration for hetzner-k3s.

Structured logging via loguru. Logging is disabled by default, the way a
library should behave, and enabled by the CLI with ``setup_logging``.

Example:
    from hetzner_k3s.logging import LogConfig, setup_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", file="hetzner-k3s.log"))
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Literal

from loguru import logger

logger.disable("hetzner_k3s")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<level>{message}</level>"
)

DEBUG_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console log level.
        file: Path to a log file. If provided, everything down to DEBUG is written there.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Configure logging and return handler IDs for cleanup.

    Args:
        config: Logging configuration.

    Returns:
        List of handler IDs that were added.
    """
    logger.enable("hetzner_k3s")
    logger.remove()
    handler_ids: list[int] = []

    fmt = DEBUG_CONSOLE_FORMAT if config.level == "DEBUG" else CONSOLE_FORMAT
    handler_ids.append(
        logger.add(
            sys.stderr,
            level=config.level,
            format=fmt,
            colorize=True,
            filter="hetzner_k3s",
        )
    )

    if config.file:
        handler_ids.append(
            logger.add(
                config.file,
                level="DEBUG",
                format=FILE_FORMAT,
                rotation=config.rotation,
                retention=config.retention,
                diagnose=False,  # tracebacks would otherwise include the API token
                filter="hetzner_k3s",
            )
        )

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("hetzner_k3s")
