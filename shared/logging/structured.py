"""JSON log lines with a per-request trace id and scrubbed secrets."""

from __future__ import annotations

import contextvars
import json
import logging
import time
import uuid
from typing import Any, Mapping

from shared.redaction import sanitize_text

_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")

# LogRecord attributes that never become payload fields.
_RESERVED = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


def set_trace_id(value: str | None = None) -> str:
    """Assign a trace identifier for the current context.

    A new UUIDv4 string is generated when ``value`` is ``None``; the id is
    returned so HTTP handlers can echo it in a response header.
    """

    trace = value or str(uuid.uuid4())
    _trace_id_var.set(trace)
    return trace


def get_trace_id() -> str:
    return _trace_id_var.get()


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line.

    Scalar ``extra`` values are copied into the payload.  The message and
    any traceback pass through :func:`sanitize_text` so webhook tokens and
    service-account keys never reach the log stream.
    """

    def __init__(self, static: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self._static = dict(static or {})

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - docstring inherited
        payload: dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
            + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": sanitize_text(record.getMessage()),
            "trace": getattr(record, "trace", "") or get_trace_id(),
        }
        payload.update(self._static)

        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED or key in payload:
                continue
            if isinstance(value, str):
                payload[key] = sanitize_text(value)
            elif isinstance(value, (int, float, bool)) or value is None:
                payload[key] = value

        if record.exc_info:
            payload["exc"] = sanitize_text(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False)
