"""Structured logging for Projectize.

Each Slack event and each sweep runs under a correlation id, and
``LogContext`` attaches extra fields (channel, entry id, component) to every
record emitted inside it. Both live in context variables, so concurrent
handlers on the event loop do not see each other's fields.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_context_fields: ContextVar[Dict[str, Any]] = ContextVar("log_context_fields", default={})

# Attributes every LogRecord has; anything else was added by extra= or LogContext
_RESERVED_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_NOISY_LOGGERS = ("slack_bolt", "slack_sdk", "aiohttp", "openai", "httpx", "urllib3")


def get_correlation_id() -> str:
    """Current correlation ID, generating one on first use."""
    cid = correlation_id.get()
    if cid is None:
        cid = uuid.uuid4().hex[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: Optional[str]) -> None:
    correlation_id.set(cid)


def record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields on a record beyond the standard LogRecord attributes."""
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_FIELDS and not key.startswith("_")
    }


class ContextFieldsFilter(logging.Filter):
    """Copies the active LogContext fields onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context_fields.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shipping."""

    def __init__(self, include_extras: bool = True):
        super().__init__()
        self.include_extras = include_extras

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
        }

        if record.levelno >= logging.ERROR:
            log_data["location"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.include_extras:
            for key, value in record_extras(record).items():
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Coloured single-line output for local runs."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        stamp = datetime.now().strftime("%H:%M:%S")

        # [HH:MM:SS] L [cid] logger: message (key=value ...)
        line = (
            f"{color}[{stamp}] {record.levelname[0]}{self.RESET} "
            f"[{get_correlation_id()}] {record.name}: {record.getMessage()}"
        )

        extras = record_extras(record)
        if extras:
            line += " (" + " ".join(f"{k}={v}" for k, v in sorted(extras.items())) + ")"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Install the Projectize handlers on the root logger.

    Args:
        level: Log level name, case-insensitive.
        json_output: JSON lines on stdout instead of the console format.
        log_file: Optional path that additionally receives JSON lines.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    handlers = []
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    for handler in handlers:
        handler.addFilter(ContextFieldsFilter())
        root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class LogContext:
    """Adds fields to every record logged inside the ``with`` block.

    Nested contexts merge, with inner values winning.
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._token = None

    def __enter__(self) -> "LogContext":
        merged = {**_context_fields.get(), **self.fields}
        self._token = _context_fields.set(merged)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if self._token is not None:
            _context_fields.reset(self._token)
            self._token = None
        return False
