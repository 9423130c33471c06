from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any

from otcsync.logging_context import get_logging_context
from otcsync.security.redaction import redact_value

# logger name -> (override env var, level used when the root is above DEBUG)
THIRD_PARTY_LEVELS: dict[str, tuple[str, int]] = {
    "httpx": ("HTTPX_LOG_LEVEL", logging.INFO),
    "httpcore": ("HTTPCORE_LOG_LEVEL", logging.WARNING),
    "websockets": ("WEBSOCKETS_LOG_LEVEL", logging.WARNING),
}


class JsonFormatter(logging.Formatter):
    """One JSON object per record; structured fields come from ``extra={"extra": {...}}``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # explicit extras win over ambient context
        for key, value in get_logging_context().items():
            payload[key] = value
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            payload.update(fields)

        if record.exc_info:
            payload.update(self._exception_fields(record))
        elif record.exc_text:
            payload["traceback"] = record.exc_text

        return json.dumps(redact_value(payload), default=str)

    def _exception_fields(self, record: logging.LogRecord) -> dict[str, str]:
        assert record.exc_info is not None
        exc_type, exc_value, _ = record.exc_info
        return {
            "error_type": exc_type.__name__ if exc_type is not None else "Exception",
            "error_message": "" if exc_value is None else str(exc_value),
            "traceback": self.formatException(record.exc_info),
        }


def parse_level(raw: str | int | None, fallback: int) -> int:
    if isinstance(raw, int):
        return raw
    if raw is None or not raw.strip():
        return fallback
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else fallback


def setup_logging(level: str | int | None = None) -> None:
    root_level = parse_level(level if level is not None else os.getenv("LOG_LEVEL"), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)

    for name, (env_name, quiet_level) in THIRD_PARTY_LEVELS.items():
        default = logging.DEBUG if root_level <= logging.DEBUG else quiet_level
        logging.getLogger(name).setLevel(parse_level(os.getenv(env_name), default))
