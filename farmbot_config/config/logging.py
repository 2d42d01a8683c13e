"""Logging helpers for the FarmBot configuration daemon.

Every record is written as one JSON object. Context passed through ``extra=``
that names a config key, the firmware hardware, the serial device or the
flash state is lifted to the top level of the object; any other extras are
nested under ``extra``.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from logging import Handler
from logging.config import dictConfig
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Any, Final

import msgspec

from .settings import RuntimeConfig

LOG_STREAM_ENV: Final = "FARMBOT_LOG_STREAM"
SYSLOG_SOCKET = Path("/dev/log")
SYSLOG_IDENT: Final = "farmbot-config: "

CONTEXT_FIELDS: Final[tuple[str, ...]] = ("config_key", "hardware", "device", "fsm_state")

_LOGGER_PREFIX = "farmbot_config."
_STANDARD_RECORD_KEYS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _log_value(value: Any) -> Any:
    match value:
        case bytes() | bytearray():
            return f"[{value.hex(' ').upper()}]"
        case msgspec.Struct():
            return msgspec.to_builtins(value, enc_hook=str)
        case str() | int() | float() | None:
            return value
        case _:
            return str(value)


class StructuredLogFormatter(logging.Formatter):
    """One JSON object per record, logger names relative to the package."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name.removeprefix(_LOGGER_PREFIX),
            "message": record.getMessage(),
        }

        extras: dict[str, Any] = {}
        for key, value in vars(record).items():
            if key in _STANDARD_RECORD_KEYS or key.startswith("_"):
                continue
            if key in CONTEXT_FIELDS:
                payload[key] = _log_value(value)
            else:
                extras[key] = _log_value(value)
        if extras:
            payload["extra"] = extras

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return msgspec.json.encode(payload).decode("utf-8")


def _build_handler() -> Handler:
    """Syslog when the daemon runs as a service, stderr otherwise."""
    if not os.environ.get(LOG_STREAM_ENV) and SYSLOG_SOCKET.exists():
        handler = SysLogHandler(address=str(SYSLOG_SOCKET), facility=SysLogHandler.LOG_DAEMON)
        handler.ident = SYSLOG_IDENT
        return handler
    return logging.StreamHandler(sys.stderr)


def configure_logging(config: RuntimeConfig) -> None:
    level_name = "DEBUG" if config.debug_logging else "INFO"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {"()": StructuredLogFormatter},
            },
            "handlers": {
                "farmbot_config": {
                    "()": _build_handler,
                    "level": level_name,
                    "formatter": "structured",
                }
            },
            "loggers": {
                # Flash lifecycle changes are logged by the coordinator itself.
                "transitions": {"level": "WARNING"},
            },
            "root": {
                "level": level_name,
                "handlers": ["farmbot_config"],
            },
        }
    )

    logging.getLogger("farmbot_config").debug("Logging configured at level %s", level_name)
