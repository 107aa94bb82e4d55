"""Structured logging for the bridge.

Every line is one JSON object.  Components that belong to one session log
through a ``SessionLogger`` so ``session_id`` and ``backend`` ride on every
record without each call repeating them.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, MutableMapping

# Record attributes copied into the JSON line when present
CONTEXT_FIELDS = ("session_id", "backend", "state", "event", "error_code")


class StructuredFormatter(logging.Formatter):
    """Emit one JSON object per record, with session context and optional ``data``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            val = getattr(record, field, None)
            if val is not None:
                entry[field] = val

        data = getattr(record, "data", None)
        if isinstance(data, dict):
            entry["data"] = data

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class SessionLogger(logging.LoggerAdapter):
    """A logger bound to one session.  Per-call ``extra`` keys win over bound ones."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs

    def bind(self, **context: Any) -> SessionLogger:
        return SessionLogger(self.logger, {**(self.extra or {}), **context})


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger with structured JSON output on stderr."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)

    # Transport libraries log every frame at DEBUG
    for lib in ("websockets", "aiohttp", "asyncio"):
        logging.getLogger(lib).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"speech_bridge.{name}")


def session_logger(name: str, session_id: str, backend: str) -> SessionLogger:
    """Component logger carrying one session's id and backend on every record."""
    return SessionLogger(get_logger(name), {"session_id": session_id, "backend": backend})
