"""Structured JSON logging helpers for the renderer service."""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

__all__ = ["JSONFormatter", "configure_logging", "serialize_error"]


# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """Render each record as a single JSON line including ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname.lower(),
            "msg": record.getMessage(),
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "logger": record.name,
        }
        for key, value in vars(record).items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            if value is None:
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(level: int = logging.INFO) -> None:
    """
    Install the JSON formatter on the root logger.

    Safe to call repeatedly; an existing JSON handler is reused.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        if isinstance(handler.formatter, JSONFormatter):
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)


def serialize_error(
    exc: Optional[BaseException],
    *,
    debug: bool = False,
) -> Optional[Dict[str, Any]]:
    """
    Reduce an exception to loggable fields.

    The stack trace is only included when ``debug`` is set.
    """
    if exc is None:
        return None

    serialized: Dict[str, Any] = {
        "message": str(exc) or type(exc).__name__,
        "name": type(exc).__name__,
        "code": getattr(exc, "errno", None) or getattr(exc, "returncode", None),
    }
    if debug:
        serialized["stack"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    return serialized
