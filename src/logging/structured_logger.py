"""Structured JSON logging configuration.

Logs carry request_id, key_id, engine and session_id extras for
tracing a request across the gate, router and streaming session.
Secret sanitization is applied to every formatted message.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from src.logging.secret_sanitizer import sanitize_secrets

_EXTRA_FIELDS = ("request_id", "key_id", "engine", "session_id", "path", "status_code", "duration_ms")


class JSONFormatter(logging.Formatter):
    """Formats log records as structured JSON with secret sanitization."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "event": sanitize_secrets(record.getMessage()),
        }

        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                log_entry[name] = getattr(record, name)

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = sanitize_secrets(str(record.exc_info[1]))

        return json.dumps(log_entry, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Human-readable formatter that still masks secrets."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        return sanitize_secrets(super().format(record))


def setup_logging(level: str = "INFO", format_type: str = "json") -> None:
    """Configure application-wide logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        format_type: "json" for structured JSON, "text" for human-readable.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if format_type == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root.addHandler(handler)

    # Reduce noise from libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("google").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
