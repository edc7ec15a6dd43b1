"""
Structured logging with per-request context.

- JSON lines in production, one-line pretty output elsewhere (LOG_FORMAT overrides).
- request_id, user_id and conversation_id live in context variables and are
  stamped on every record emitted while they are bound.
- log_event() is the helper for governance events; values are truncated.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

LOGGER_NAME = "chatgate"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_ctx_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
conversation_id_ctx_var: ContextVar[Optional[str]] = ContextVar("conversation_id", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_ctx_var,
    "user_id": user_id_ctx_var,
    "conversation_id": conversation_id_ctx_var,
}

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current request_id from context (if any)."""
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


@contextmanager
def bind_log_context(**values: Optional[str]) -> Iterator[None]:
    """Bind context fields (request_id, user_id, conversation_id) for a block."""
    tokens = []
    for key, value in values.items():
        if key not in _CONTEXT_VARS:
            raise KeyError(f"unknown log context field: {key}")
        tokens.append((_CONTEXT_VARS[key], _CONTEXT_VARS[key].set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms")):
        if latency_ms < bound:
            return label
    return ">=1000ms"


class ContextFilter(logging.Filter):
    """Copy bound context fields onto records that don't set them explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, var in _CONTEXT_VARS.items():
            if getattr(record, key, None) is None:
                setattr(record, key, var.get())
        return True


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _fields(record: logging.LogRecord) -> Dict[str, object]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and key != "request_id" and value is not None
    }


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        parts = [_timestamp(record), record.levelname, f"[{LOGGER_NAME}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{k}={v}" for k, v in _fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", *, level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Install one stdout handler on the chatgate logger.

    `fmt` is "json" or "pretty"; by default production logs JSON.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel((level or "INFO").upper())

    use_json = (fmt or ("json" if env.lower() == "production" else "pretty")).lower() == "json"
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if use_json else PrettyFormatter())
    handler.addFilter(ContextFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # Reduce noise from uvicorn loggers but keep error output
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Emit a governance event; unset ids fall back to the bound context."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        # Ensure logging configured in edge cases (tests)
        configure_logging(os.getenv("ENV", "development"))

    payload: Dict[str, object] = {
        "request_id": request_id or request_id_ctx_var.get(),
        "user_id": user_id or user_id_ctx_var.get(),
        "conversation_id": conversation_id or conversation_id_ctx_var.get(),
    }
    if event_type:
        payload["event_type"] = event_type
    if error_code:
        payload["error_code"] = error_code
    for key, value in (extra or {}).items():
        payload[key] = _safe_truncate(value)

    getattr(logger, level, logger.info)(msg, extra=payload)
