"""
Structured logging for the relay.

Every record is a single JSON object on stdout:

    {"ts": ..., "level": "info", "logger": "relay", "event": "relay.connect", ...}

Loggers carry bound context (host, port, session id) that is merged into
every event they emit. Call sites pass the event name positionally and any
extra fields as keyword arguments; ``exc=`` attaches an exception.
"""

import json
import logging
import os
import sys
import time
from typing import Any

_ROOT_LOGGER_NAME = "debugger_relay"
_configured = False


class JsonFormatter(logging.Formatter):
    """Render records produced by StructuredLogger as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": round(record.created, 3),
            "level": record.levelname.lower(),
            "logger": record.name.removeprefix(f"{_ROOT_LOGGER_NAME}."),
            "event": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            payload.update(fields)
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["error_type"] = type(exc).__name__
            payload["error"] = str(exc)
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    """Install the JSON handler once. Safe to call from every module."""
    global _configured
    if _configured:
        return

    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger(_ROOT_LOGGER_NAME)
    root.handlers = [handler]
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.propagate = False
    _configured = True


class StructuredLogger:
    """Thin wrapper that turns keyword arguments into structured fields."""

    def __init__(self, name: str, **context: Any):
        self._logger = logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}")
        self.context = context

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(
            self._logger.name.removeprefix(f"{_ROOT_LOGGER_NAME}."),
            **{**self.context, **context},
        )

    def _log(self, level: int, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self.context, **fields}
        exc_info = (type(exc), exc, exc.__traceback__) if exc is not None else None
        self._logger.log(level, event, exc_info=exc_info, extra={"fields": merged})

    def debug(self, event: str, **fields: Any) -> None:
        self._log(logging.DEBUG, event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._log(logging.INFO, event, **fields)

    def warn(self, event: str, **fields: Any) -> None:
        self._log(logging.WARNING, event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._log(logging.ERROR, event, **fields)


class RateLimitedLog:
    """Emit a given key at most once per window.

    Reconnect storms would otherwise flood the log with identical lines.
    """

    def __init__(self, window_s: float = 10.0):
        self.window_s = window_s
        self._last: dict[str, float] = {}

    def allow(self, key: str) -> bool:
        now = time.monotonic()
        last = self._last.get(key)
        if last is not None and now - last < self.window_s:
            return False
        self._last[key] = now
        return True


def get_logger(name: str, **context: Any) -> StructuredLogger:
    return StructuredLogger(name, **context)
