from __future__ import annotations

import contextvars
import enum
import json
import logging
import sys
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

# Attributes every LogRecord already carries; structured fields must not shadow them.
_RECORD_ATTRIBUTES = frozenset(logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
}
# Keys JsonLogFormatter writes itself.
_PAYLOAD_KEYS = frozenset({"timestamp", "level", "logger", "trace_id", "exception"})

_TRACE_ID: contextvars.ContextVar[str | None] = contextvars.ContextVar("hrsaas_trace_id", default=None)


def bind_trace_id(trace_id: str | None) -> contextvars.Token:
    return _TRACE_ID.set(trace_id)


def reset_trace_id(token: contextvars.Token) -> None:
    _TRACE_ID.reset(token)


def current_trace_id() -> str | None:
    return _TRACE_ID.get()


def _to_json_safe(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return _to_json_safe(value.value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        # Money stays exact in the log line.
        return str(value)
    if isinstance(value, dict):
        return {str(k): _to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_json_safe(item) for item in value]
    return str(value)


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, trace id, then event fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        trace_id = current_trace_id()
        if trace_id:
            payload["trace_id"] = trace_id
        payload.update(
            (key, _to_json_safe(value))
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_json_logging(*, level: int | str = logging.INFO) -> None:
    root = logging.getLogger()
    root.setLevel(level)
    if any(isinstance(handler.formatter, JsonLogFormatter) for handler in root.handlers):
        return
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    root.handlers.clear()
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_event(logger: logging.Logger, level: int, message: str, /, **fields: Any) -> None:
    """Emit `message` with `fields` as structured extras; a field that would shadow a record attribute or a payload key gets a `field_` prefix."""
    extra = {
        (f"field_{key}" if key in _RECORD_ATTRIBUTES or key in _PAYLOAD_KEYS else key): _to_json_safe(value)
        for key, value in fields.items()
    }
    logger.log(level, message, extra=extra)
