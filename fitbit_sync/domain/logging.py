"""Lightweight logging helpers for domain code without infrastructure coupling."""
from __future__ import annotations

import logging
from typing import Final

# Child of the shared history logger so records reach its handlers once configured.
DOMAIN_LOGGER_NAME: Final[str] = "fitbit_sync.history.domain"

_LEVEL_MAP: Final[dict[str, int]] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    return _LEVEL_MAP.get(str(level).upper(), logging.INFO)


def log_message(message: str, level: str | int = "INFO", tag: str = "SYNC") -> None:
    """Log ``message`` using the standard library logger."""

    logging.getLogger(DOMAIN_LOGGER_NAME).log(_resolve_level(level), message, extra={"tag": tag})


def debug(message: str, tag: str = "SYNC") -> None:
    log_message(message, "DEBUG", tag)


def info(message: str, tag: str = "SYNC") -> None:
    log_message(message, "INFO", tag)


def warn(message: str, tag: str = "SYNC") -> None:
    log_message(message, "WARNING", tag)


def error(message: str, tag: str = "SYNC") -> None:
    log_message(message, "ERROR", tag)
