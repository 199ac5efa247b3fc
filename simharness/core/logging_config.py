"""Unified logging configuration for the simulation harness.

Library modules only ever do ``logger = logging.getLogger(__name__)``; this
module is for entry points (scripts, long fuzzing sessions) that need to
attach handlers once.

Usage:
    from simharness.core.logging_config import setup_logging

    logger = setup_logging("simharness", level="DEBUG", log_dir="logs")
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Iterable

__all__ = [
    "COMPACT_FORMAT",
    "DEFAULT_FORMAT",
    "DETAILED_FORMAT",
    "STRUCTURED_FORMAT",
    "LogContext",
    "configure_third_party_loggers",
    "get_logger",
    "setup_logging",
]

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
COMPACT_FORMAT = "%(asctime)s %(levelname).1s %(message)s"
DETAILED_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - "
    "[%(filename)s:%(lineno)d] %(funcName)s() - %(message)s"
)
STRUCTURED_FORMAT = (
    '{"time": "%(asctime)s", "logger": "%(name)s", '
    '"level": "%(levelname)s", "message": "%(message)s"}'
)

_FORMATS = {
    "default": DEFAULT_FORMAT,
    "compact": COMPACT_FORMAT,
    "detailed": DETAILED_FORMAT,
    "structured": STRUCTURED_FORMAT,
}

# Packages that log at INFO on every HTTP request to the reporting sink.
NOISY_PACKAGES = ("urllib3", "requests", "charset_normalizer")


def _resolve_level(level: int | str) -> int:
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        return resolved if isinstance(resolved, int) else logging.INFO
    return level


def setup_logging(
    name: str,
    level: int | str = logging.INFO,
    log_file: str | Path | None = None,
    log_dir: str | Path | None = None,
    console: bool = True,
    format_style: str = "default",
    propagate: bool = False,
) -> logging.Logger:
    """Configure and return a named logger.

    Calling this twice for the same name does not stack handlers: a handler
    of a given type/target is only added when the logger does not already
    carry one.

    Args:
        name: Logger name.
        level: Logging level, as int or name ("DEBUG", "WARNING", ...).
        log_file: Explicit log file path.
        log_dir: Directory for a ``<name>.log`` file when log_file is unset.
        console: Attach a stderr stream handler.
        format_style: One of default, compact, detailed, structured.
            Unknown styles fall back to default.
        propagate: Whether records also reach ancestor loggers.
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level))
    logger.propagate = propagate

    formatter = logging.Formatter(_FORMATS.get(format_style, DEFAULT_FORMAT))

    if console and not any(
        type(h) is logging.StreamHandler for h in logger.handlers
    ):
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

    target: Path | None = None
    if log_file is not None:
        target = Path(log_file)
    elif log_dir is not None:
        target = Path(log_dir) / f"{name.replace('.', '_')}.log"

    if target is not None:
        target.parent.mkdir(parents=True, exist_ok=True)
        resolved = str(target.resolve())
        already = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == resolved
            for h in logger.handlers
        )
        if not already:
            file_handler = logging.FileHandler(resolved)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name`` without touching its handlers."""
    return logging.getLogger(name)


def configure_third_party_loggers(
    quiet: bool = True,
    verbose_packages: Iterable[str] | None = None,
) -> None:
    """Raise noisy third-party loggers to WARNING.

    Packages listed in verbose_packages are left at whatever level they
    already have.
    """
    if not quiet:
        return
    keep = set(verbose_packages or ())
    for package in NOISY_PACKAGES:
        if package in keep:
            continue
        logging.getLogger(package).setLevel(logging.WARNING)


class LogContext:
    """Temporarily change a logger's level.

    Example:
        with LogContext(logger, logging.DEBUG):
            monitor.after_action(state)
    """

    def __init__(self, logger: logging.Logger, level: int | str):
        self.logger = logger
        self.level = _resolve_level(level)
        self._previous: int | None = None

    def __enter__(self) -> logging.Logger:
        self._previous = self.logger.level
        self.logger.setLevel(self.level)
        return self.logger

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._previous is not None:
            self.logger.setLevel(self._previous)
