"""Structured logging for the scheduler, with a per-cycle trace_id via contextvars."""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import uuid
from datetime import datetime, timezone

# Bound once per scan cycle (or CLI command) so every line it emits correlates
_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "trace_id", default="-"
)

# LogRecord attributes that are not caller-supplied extra= fields
_STDLIB_FIELDS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "taskName",
})

_PLAIN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(trace_id)s] %(message)s"


def _extra_fields(record: logging.LogRecord) -> dict:
    return {
        key: val for key, val in record.__dict__.items()
        if key not in _STDLIB_FIELDS and not key.startswith("_") and key != "trace_id"
    }


class JsonFormatter(logging.Formatter):
    """Emit one compact JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        data: dict = {
            "ts":       datetime.fromtimestamp(record.created, tz=timezone.utc)
                        .strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level":    record.levelname,
            "logger":   record.name,
            "msg":      record.message,
            "trace_id": _trace_id_var.get(),
        }
        data.update(_extra_fields(record))

        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


class PlainFormatter(logging.Formatter):
    """Human-readable lines for interactive use; extra= fields appended as k=v."""

    def __init__(self) -> None:
        super().__init__(_PLAIN_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        record.trace_id = _trace_id_var.get()
        line = super().format(record)
        extras = _extra_fields(record)
        if extras:
            line += "  " + " ".join(f"{k}={v}" for k, v in extras.items())
        return line


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Replace the root logger's handlers with a single stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if json_output else PlainFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def set_trace_id(trace_id: str) -> contextvars.Token:
    """Bind a trace_id to the current async context."""
    return _trace_id_var.set(trace_id)


def reset_trace_id(token: contextvars.Token) -> None:
    _trace_id_var.reset(token)


def new_trace_id() -> str:
    return uuid.uuid4().hex[:8]


def get_trace_id() -> str:
    return _trace_id_var.get()
