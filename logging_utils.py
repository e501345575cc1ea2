"""Tagged logging helper shared by the analysis pipeline and the runner.

Every record carries a short component tag and the thread name, so output
from the capture thread and the consumer loop stays readable when
interleaved.
"""
from __future__ import annotations

import logging
from typing import Any

LOGGER_NAME = "pulsescope"
DEFAULT_TAG = "Engine"

_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}

_logger = logging.getLogger(LOGGER_NAME)
if not _logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("[%(levelname)s][%(threadName)s][%(tag)s] %(message)s"))
    _logger.addHandler(_handler)
    _logger.setLevel(logging.INFO)
    _logger.propagate = False


class _TagAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: dict[str, Any]):
        kwargs.setdefault("extra", {})["tag"] = kwargs.pop("tag", DEFAULT_TAG)
        return msg, kwargs


_logger_adapter = _TagAdapter(_logger, {})


def _level_value(level: str | None) -> int | None:
    name = (level or "").strip().upper()
    name = _LEVEL_ALIASES.get(name, name)
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else None


def log_event(level: str, tag: str, message: str, /, **fields: Any) -> None:
    """Log ``message`` under ``tag``; fields are appended as ``| k=v k=v``.

    Nothing is formatted when the level is disabled, so DEBUG calls on the
    audio path cost a single level check.
    """
    level_val = _level_value(level)
    if level_val is None:
        level_val = logging.INFO
    if not _logger.isEnabledFor(level_val):
        return
    if fields:
        message = f"{message} | " + " ".join(f"{k}={v}" for k, v in fields.items())
    _logger_adapter.log(level_val, message, tag=tag)


def set_log_level(level: str | None) -> str:
    """Set the pipeline log level (DEBUG/INFO/WARNING/ERROR); unknown names fall back to INFO."""
    level_val = _level_value(level)
    if level_val is None:
        if level:
            log_event("WARN", "Log", "Unknown log level, using INFO", level=level)
        level_val = logging.INFO
    _logger.setLevel(level_val)
    return get_log_level()


def get_log_level() -> str:
    return logging.getLevelName(_logger.level)
