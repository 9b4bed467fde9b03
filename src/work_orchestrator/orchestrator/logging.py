"""Structured logging configuration.

Uses standard library logging with a JSON formatter. The identifiers that tie
a line to a chain run or a status change (`execution_id`, `subject`,
`step_index`, ...) are promoted to top-level keys so log queries can filter on
them; any other `extra=` field is nested under `extra`.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

_RESERVED_LOG_RECORD_ATTRS: set[str] = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "thread",
    "taskName",
    "threadName",
}

CORRELATION_FIELDS: tuple[str, ...] = (
    "execution_id",
    "chain_id",
    "trigger_id",
    "subject",
    "step_index",
    "gate_id",
)


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value, key=str)
    return str(value)


class JsonFormatter(logging.Formatter):
    """One JSON object per line; correlation ids first, then free-form extras."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_RECORD_ATTRS or key.startswith("_"):
                continue
            if key in CORRELATION_FIELDS:
                if value is not None:
                    payload[key] = value
            else:
                extra[key] = value
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=_json_default)


def configure_logging(level: str) -> None:
    """Configure root logging with structured JSON output."""

    root = logging.getLogger()

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.addHandler(handler)
    root.setLevel(level.upper())

    # Third-party loggers stay at WARNING or the root level, whichever is stricter.
    for name in ("httpx", "openai", "uvicorn.access"):
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))
