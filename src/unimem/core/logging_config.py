"""
Unimem Logging Configuration
============================
Centralized logging configuration using loguru.

Modules log through ``from loguru import logger`` directly; the CLI (or an
embedding application) calls configure_logging() once at startup to pick
the sink, level and output format.

    from unimem.core.logging_config import configure_logging

    configure_logging(level="DEBUG", json_format=True)
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from loguru import logger

_CONFIGURED = False

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def configure_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    *,
    sink: Optional[str] = None,
) -> None:
    """
    Configure loguru logging for Unimem. Safe to call repeatedly; each call
    replaces the previously installed handler.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: If True, emit one JSON object per record. If None, check LOG_FORMAT.
        sink: Optional file path for log output. If None, logs to stderr.

    Environment:
        LOG_FORMAT: Set to "json" to enable JSON formatted logs.
        LOG_LEVEL: Log level used when ``level`` is not given.
    """
    global _CONFIGURED

    if json_format is None:
        json_format = os.environ.get("LOG_FORMAT", "").lower() == "json"

    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO")

    logger.remove()

    log_sink = sink if sink else sys.stderr

    if json_format:
        # loguru builds the JSON document itself
        logger.add(log_sink, level=level.upper(), serialize=True, enqueue=True)
    else:
        logger.add(
            log_sink,
            level=level.upper(),
            format=_TEXT_FORMAT,
            colorize=sink is None,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    _intercept_standard_logging(level)

    _CONFIGURED = True
    logger.debug(f"Logging configured: level={level}, json_format={json_format}")


def is_configured() -> bool:
    return _CONFIGURED


class _InterceptHandler(logging.Handler):
    """Forward stdlib logging records (aiohttp, asyncio) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            log_level = logger.level(record.levelname).name
        except ValueError:
            log_level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(log_level, record.getMessage())


def _intercept_standard_logging(level: str) -> None:
    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    for logger_name in ("aiohttp.client", "aiohttp.internal", "asyncio"):
        logging.getLogger(logger_name).setLevel(level.upper())


__all__ = ["configure_logging", "is_configured"]
