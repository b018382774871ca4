"""Global logger setup, log levels and output formats."""

from __future__ import annotations

import enum
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, MutableMapping

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")


class FormatType(enum.IntEnum):
    """Output format of the log."""

    TEXT = 0  # logging as text
    JSON = 1  # JSON format

    def __str__(self) -> str:
        return self.name.lower()


class Level(enum.IntEnum):
    """Log level as named in the configuration."""

    INFO = 0
    TRACE = 1
    DEBUG = 2
    WARN = 3
    ERROR = 4
    FATAL = 5

    def __str__(self) -> str:
        return self.name.lower()


_PYTHON_LEVELS = {
    Level.INFO: logging.INFO,
    Level.TRACE: TRACE,
    Level.DEBUG: logging.DEBUG,
    Level.WARN: logging.WARNING,
    Level.ERROR: logging.ERROR,
    Level.FATAL: logging.CRITICAL,
}

_TEXT_LABELS = {
    TRACE: "TRACE",
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "FATAL",
}

_JSON_LABELS = {
    TRACE: "trace",
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warning",
    logging.ERROR: "error",
    logging.CRITICAL: "fatal",
}


def _parse_enum(enum_cls: type[enum.Enum], name: str) -> Any:
    for member in enum_cls:
        if str(member) == name:
            return member
    choices = ", ".join(str(member) for member in enum_cls)
    raise ValueError(f"{name} is not a valid {enum_cls.__name__}, try [{choices}]")


def parse_format_type(name: str) -> FormatType:
    """Return the FormatType with the given name, e.g. 'text' or 'json'."""
    return _parse_enum(FormatType, name)


def parse_level(name: str) -> Level:
    """Return the Level with the given name, e.g. 'info' or 'debug'."""
    return _parse_enum(Level, name)


def _quote(value: Any) -> str:
    text = str(value)
    if text == "" or any(ch.isspace() or ch in '="' for ch in text):
        return json.dumps(text)
    return text


def _level_label(levelno: int, labels: dict[int, str]) -> str:
    if levelno in labels:
        return labels[levelno]
    return logging.getLevelName(levelno)


class _TextFormatter(logging.Formatter):
    def __init__(self, with_timestamp: bool) -> None:
        super().__init__()
        self._with_timestamp = with_timestamp

    def format(self, record: logging.LogRecord) -> str:
        parts = []
        if self._with_timestamp:
            parts.append(f"[{self.formatTime(record, TIMESTAMP_FORMAT)}]")
        parts.append(_level_label(record.levelno, _TEXT_LABELS))
        message = record.getMessage()
        prefix = getattr(record, "prefix", None)
        parts.append(f"{prefix}: {message}" if prefix else message)
        fields = getattr(record, "fields", None) or {}
        parts.extend(f"{key}={_quote(value)}" for key, value in fields.items())
        text = " ".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "level": _level_label(record.levelno, _JSON_LABELS),
            "msg": record.getMessage(),
            "time": datetime.fromtimestamp(record.created, timezone.utc)
            .astimezone()
            .isoformat(timespec="seconds"),
        }
        prefix = getattr(record, "prefix", None)
        if prefix:
            data["prefix"] = prefix
        data.update(getattr(record, "fields", None) or {})
        if record.exc_info:
            data["error"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class _OutputHandler(logging.Handler):
    """Writes to the current standard error unless silenced."""

    def __init__(self) -> None:
        super().__init__()
        self.discard = False

    def emit(self, record: logging.LogRecord) -> None:
        if self.discard:
            return
        try:
            stream = sys.stderr
            stream.write(self.format(record) + "\n")
            stream.flush()
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _PrefixedAdapter(logging.LoggerAdapter):
    """Adapter that adds a prefix while keeping the caller's extra fields."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


_logger = logging.getLogger("blocky")
_output = _OutputHandler()
_logger.addHandler(_output)


def get_logger() -> logging.Logger:
    """Return the global logger."""
    return _logger


def prefixed_log(prefix: str) -> logging.LoggerAdapter:
    """Return the global logger with the given prefix attached to each record."""
    return _PrefixedAdapter(_logger, {"prefix": prefix})


def escape_input(text: str) -> str:
    """Remove line breaks from the input."""
    return text.replace("\n", "").replace("\r", "")


def configure_logger(
    level: Level | str, format_type: FormatType | str, log_timestamp: bool
) -> None:
    """Apply level, output format and timestamp setting to the global logger."""
    if isinstance(level, str):
        level = parse_level(level)
    if isinstance(format_type, str):
        format_type = parse_format_type(format_type)

    _logger.setLevel(_PYTHON_LEVELS[Level(level)])

    if format_type == FormatType.TEXT:
        _output.setFormatter(_TextFormatter(with_timestamp=log_timestamp))
    else:
        _output.setFormatter(_JsonFormatter())


def silence() -> None:
    """Discard all output of the global logger."""
    _output.discard = True


configure_logger(Level.INFO, FormatType.TEXT, True)