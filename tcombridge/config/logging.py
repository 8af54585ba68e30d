"""Logging setup for the Tcom bridge.

Every line is a single JSON object. Records emitted through a
:class:`SessionLogger` carry the ``session_id`` they belong to (and the
``endpoint`` where one applies); the formatter lifts those to top-level keys so
a log pipeline can follow one bridge among many.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import MutableMapping
from datetime import datetime, timezone
from enum import Enum
from logging.config import dictConfig
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Any

import msgspec

from .model import RuntimeConfig

LOG_STREAM_ENV = "TCOMBRIDGE_LOG_STREAM"
SYSLOG_SOCKETS = (Path("/dev/log"), Path("/var/run/log"))

CONTEXT_KEYS = ("session_id", "endpoint")
_LOGGER_PREFIX = "tcombridge."
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_json_encoder = msgspec.json.Encoder()


def _json_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        # Serial payloads are binary: hex, never decoded.
        return f"[{bytes(value).hex(' ').upper()}]"
    return str(value)


class SessionLogger(logging.LoggerAdapter):
    """Logger adapter stamping records with their session (and endpoint)."""

    def __init__(self, logger: logging.Logger, session_id: str, endpoint: str | None = None) -> None:
        context: dict[str, Any] = {"session_id": session_id}
        if endpoint is not None:
            context["endpoint"] = str(endpoint)
        super().__init__(logger, context)

    @property
    def session_id(self) -> str:
        return self.extra["session_id"]  # type: ignore[index]

    def for_endpoint(self, endpoint: str) -> SessionLogger:
        return SessionLogger(self.logger, self.session_id, endpoint)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs


class StructuredLogFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, session context, message."""

    def format(self, record: logging.LogRecord) -> str:
        fields = record.__dict__
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name.removeprefix(_LOGGER_PREFIX),
        }
        for key in CONTEXT_KEYS:
            if fields.get(key) is not None:
                payload[key] = _json_value(fields[key])
        payload["message"] = record.getMessage()

        extra = {
            key: _json_value(value)
            for key, value in fields.items()
            if key not in _STANDARD_ATTRS and key not in CONTEXT_KEYS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return _json_encoder.encode(payload).decode("utf-8")


def _build_handler() -> logging.Handler:
    if os.environ.get(LOG_STREAM_ENV) or sys.platform == "win32":
        return logging.StreamHandler()
    socket_path = next((path for path in SYSLOG_SOCKETS if path.exists()), None)
    if socket_path is None:
        return logging.StreamHandler()
    handler = SysLogHandler(address=str(socket_path), facility=SysLogHandler.LOG_DAEMON)
    handler.ident = "tcombridge "
    return handler


def configure_logging(config: RuntimeConfig) -> None:
    """Install the JSON handler on the root logger."""
    level = "DEBUG" if config.debug_logging else "INFO"
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": StructuredLogFormatter}},
            "handlers": {"bridge": {"()": _build_handler, "level": level, "formatter": "json"}},
            # transitions narrates every state change at INFO.
            "loggers": {"transitions": {"level": "DEBUG" if config.debug_logging else "WARNING"}},
            "root": {"level": level, "handlers": ["bridge"]},
        }
    )
    logging.getLogger("tcombridge").debug("Logging configured at %s", level)


__all__ = ["SessionLogger", "StructuredLogFormatter", "configure_logging"]
