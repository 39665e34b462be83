"""Telemetry object, logger construction, fields and resource attributes."""

from __future__ import annotations

import io
import json
import logging
import os
import secrets
import socket
import sys
import urllib.parse
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from telkit.config import DISABLE_LOG, Config

SERVICE_NAME_KEY = "service"
SERVICE_VERSION_KEY = "service.version"
SERVICE_INSTANCE_ID_KEY = "service_instance_id"
HOST_NAME_KEY = "host.name"

_LOGGER_NAME = "telkit"

_LEVEL_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    45: "dpanic",
    48: "panic",
    logging.CRITICAL: "fatal",
}


@dataclass(frozen=True)
class Field:
    """A structured key/value attached to a log entry."""

    key: str
    value: Any


def field(key: str, value: Any) -> Field:
    """Create a log field."""
    return Field(key, value)


def gen_instance_id(service: str) -> str:
    """Service name followed by four random bytes in hex."""
    return f"{service}-{secrets.token_hex(4)}"


def create_resource(
    config: Config, instance_generator: Callable[[str], str] = gen_instance_id
) -> dict[str, str]:
    """Resource attributes describing this service instance."""
    attributes: dict[str, str] = {}

    for item in os.environ.get("OTEL_RESOURCE_ATTRIBUTES", "").split(","):
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        attributes[key] = urllib.parse.unquote(value.strip())

    env_service = os.environ.get("OTEL_SERVICE_NAME", "")
    if env_service:
        attributes["service.name"] = env_service

    attributes[HOST_NAME_KEY] = socket.gethostname()
    attributes[SERVICE_NAME_KEY] = config.service
    attributes[SERVICE_VERSION_KEY] = config.version
    attributes[SERVICE_INSTANCE_ID_KEY] = instance_generator(config.service)
    return attributes


def _level_name(levelno: int) -> str:
    return _LEVEL_NAMES.get(levelno, logging.getLevelName(levelno).lower())


def _timestamp(record: logging.LogRecord) -> str:
    moment = datetime.fromtimestamp(record.created, tz=timezone.utc).astimezone()
    return moment.isoformat(timespec="seconds")


def _caller(record: logging.LogRecord) -> str:
    return f"{os.path.basename(record.pathname)}:{record.lineno}"


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {f.key: f.value for f in getattr(record, "fields", ())}


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": _level_name(record.levelno),
            "ts": _timestamp(record),
            "caller": _caller(record),
            "msg": record.getMessage(),
        }
        payload.update(_record_fields(record))
        if record.stack_info:
            payload["stacktrace"] = record.stack_info
        return json.dumps(payload, default=str)


class _ConsoleFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [
            _timestamp(record),
            _level_name(record.levelno).upper(),
            _caller(record),
            record.getMessage(),
        ]
        fields = _record_fields(record)
        if fields:
            parts.append(json.dumps(fields, default=str))
        line = "\t".join(parts)
        if record.stack_info:
            line += "\n" + record.stack_info
        return line


def new_logger(config: Config) -> logging.Logger:
    """Build a logger for the configured level and encoding."""
    level = config.level()
    logger = logging.Logger(_LOGGER_NAME, level)
    logger.propagate = False

    encoding = config.log_encode
    handler: logging.Handler
    if encoding == DISABLE_LOG:
        handler = logging.NullHandler()
    elif encoding in ("json", "console"):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_ConsoleFormatter() if encoding == "console" else _JsonFormatter())
    else:
        raise ValueError(f"zap build: no encoder registered for name {encoding!r}")

    handler.setLevel(level)
    logger.addHandler(handler)
    return logger


class Telemetry:
    """A logger together with its configuration and the fields put on it."""

    def __init__(self, config: Config, logger: logging.Logger | None = None) -> None:
        self.config = config
        self.logger = logger if logger is not None else new_logger(config)
        self.fields: list[Field] = []

    def put_fields(self, *args: Field) -> Telemetry:
        """Attach fields to every later log entry; returns self."""
        self.fields.extend(args)
        return self

    def copy(self) -> Telemetry:
        """A telemetry sharing config and logger with its own field list."""
        clone = Telemetry(self.config, self.logger)
        clone.fields = list(self.fields)
        return clone

    def _log(self, level: int, msg: str, args: tuple[Field, ...]) -> None:
        if not self.logger.isEnabledFor(level):
            return
        self.logger.log(
            level,
            msg,
            extra={"fields": [*self.fields, *args]},
            stacklevel=3,
            stack_info=level >= logging.ERROR,
        )

    def debug(self, msg: str, *args: Field) -> None:
        self._log(logging.DEBUG, msg, args)

    def info(self, msg: str, *args: Field) -> None:
        self._log(logging.INFO, msg, args)

    def warn(self, msg: str, *args: Field) -> None:
        self._log(logging.WARNING, msg, args)

    def error(self, msg: str, *args: Field) -> None:
        self._log(logging.ERROR, msg, args)


def set_log_output(telemetry: Telemetry) -> io.StringIO:
    """Duplicate the telemetry's log output, at debug level, into a buffer."""
    buffer = io.StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_ConsoleFormatter())

    tee = logging.Logger(telemetry.logger.name, logging.DEBUG)
    tee.propagate = False
    for existing in telemetry.logger.handlers:
        tee.addHandler(existing)
    tee.addHandler(handler)

    telemetry.logger = tee
    return buffer