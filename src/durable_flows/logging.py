"""Structured logging configuration.

Records are rendered as one JSON object per line. The run context that the
flow runtime attaches through ``extra`` (flow, run id, step, ...) is lifted to
top-level keys so log lines can be filtered per run; anything else a caller
passes stays under ``"extra"``. Records emitted inside an active span carry
its trace and span ids.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

from opentelemetry import trace

# Everything a bare LogRecord carries, plus what Formatter.format adds.
_RECORD_ATTRS: frozenset[str] = frozenset(vars(logging.makeLogRecord({}))) | {
    "asctime",
    "message",
    "taskName",
}

RUN_CONTEXT_KEYS: tuple[str, ...] = ("flow", "run_id", "step", "action", "status", "token")

_QUIET_LOGGERS: tuple[str, ...] = ("uvicorn.access", "urllib3", "opentelemetry")


def _trace_context() -> dict[str, str]:
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return {}
    return {
        "trace_id": format(span_context.trace_id, "032x"),
        "span_id": format(span_context.span_id, "016x"),
    }


class JsonFormatter(logging.Formatter):
    """Render a record as a single JSON line with run context at the top level."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        fields = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        for key in RUN_CONTEXT_KEYS:
            if key in fields:
                payload[key] = fields.pop(key)
        payload.update(_trace_context())
        if fields:
            payload["extra"] = fields

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        # Step values and flow inputs can end up in a record; never fail a log call on them.
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str, *, stream: TextIO | None = None) -> None:
    """Send all logging through one JSON handler on ``stream`` (stdout by default).

    The CLI prints results on stdout, so it passes ``sys.stderr`` here.
    Re-configuring replaces the previous handler.
    """

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.INFO))
