"""Structured logging for the engine.

One JSON object per line. Engine modules log with
`extra={"case_id": ..., "transition_id": ...}`; those identifiers become
top-level keys so a case can be followed through the log with a plain filter.
Anything else passed through `extra` lands under `details`.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

# Identifiers promoted to top-level keys, in output order.
CONTEXT_KEYS: tuple[str, ...] = (
    "workflow_id",
    "case_id",
    "transition_id",
    "place_id",
    "token_id",
)

_STANDARD_ATTRS: frozenset[str] = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        attrs = vars(record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update((key, attrs[key]) for key in CONTEXT_KEYS if key in attrs)

        details = {
            key: value
            for key, value in attrs.items()
            if key not in _STANDARD_ATTRS
            and key not in CONTEXT_KEYS
            and not key.startswith("_")
        }
        if details:
            payload["details"] = details

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str, *, stream: TextIO | None = None) -> logging.Handler:
    """Send all records to `stream` (stdout by default) as JSON lines.

    Replaces any handlers already on the root logger and returns the new one.
    """

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())
    return handler
