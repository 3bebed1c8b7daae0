"""Centralized logging configuration for the Lesson Portal application."""

from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Iterable


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: int = logging.INFO, *, handlers: Iterable[logging.Handler] | None = None) -> Logger:
    """Attach *handlers* (or a plain stream handler) to the root logger."""

    logger = logging.getLogger()
    logger.setLevel(level)

    if handlers is None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        logger.addHandler(stream_handler)
    else:
        for handler in handlers:
            logger.addHandler(handler)

    return logger


def build_file_and_stream_handlers(log_file: Path) -> list[logging.Handler]:
    """Return the file + console handler pair used by the CLI entry points."""

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    return [file_handler, stream_handler]


def get_log_file_path(storage_root: Path) -> Path:
    """Return the default path for the application log file."""

    return storage_root / "lesson_portal.log"


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "build_file_and_stream_handlers",
    "configure_logging",
    "get_log_file_path",
]
