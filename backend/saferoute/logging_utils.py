from __future__ import annotations

import logging
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "saferoute"
LOG_FILE_NAME = "engine.log.jsonl"

# Attributes logging.LogRecord sets itself; passing them in ``extra`` raises KeyError.
RESERVED_RECORD_KEYS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def _parse_level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


def _writable_log_dir() -> Path | None:
    for log_dir in (
        Path(settings.out_dir) / "logs",
        Path(gettempdir()) / LOGGER_NAME / "logs",
    ):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            marker = log_dir / ".writetest"
            marker.touch(exist_ok=True)
            marker.unlink(missing_ok=True)
            return log_dir
        except OSError:
            continue
    return None


def get_logger() -> logging.Logger:
    """JSON-lines engine logger writing to stderr and, when possible, ``<out_dir>/logs``."""
    logger = logging.getLogger(LOGGER_NAME)

    # Reloaders import the app twice.
    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_parse_level(settings.log_level))
    logger.propagate = False
    formatter = jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(message)s")

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    log_dir = _writable_log_dir()
    if log_dir is not None:
        try:
            file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
        except OSError:
            file_handler = None
        if file_handler is not None:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger._configured = True  # type: ignore[attr-defined]
    return logger


LOGGER: logging.Logger | None = None


def _logger() -> logging.Logger:
    global LOGGER
    if LOGGER is None:
        LOGGER = get_logger()
    return LOGGER


def event_extra(event: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Structured payload for one engine event.

    Field names that clash with LogRecord attributes are emitted as ``field_<name>``.
    """
    extra: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        extra[f"field_{key}" if key in RESERVED_RECORD_KEYS else key] = value
    return extra


def log_event(event: str, **fields: Any) -> None:
    _logger().info(event, extra=event_extra(event, fields))


def log_warning(event: str, **fields: Any) -> None:
    _logger().warning(event, extra=event_extra(event, fields))
