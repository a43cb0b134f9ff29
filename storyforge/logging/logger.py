"""
Structured JSON logging for the StoryForge services.

Every line carries the service name and, inside a request's lifecycle task,
the request id. The orchestrator binds the id once per task with
bind_request_id(), so router, registry and safety log lines emitted on the
request's behalf are tagged without threading the id through every call.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

current_request_id: ContextVar[str | None] = ContextVar("current_request_id", default=None)

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "openai", "sqlalchemy.engine")


def bind_request_id(request_id: str | None) -> None:
    """Tag log records emitted from the current task with *request_id*."""
    current_request_id.set(request_id)


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self._service = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self._service,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # An explicit extra={"request_id": ...} wins over the bound one
        request_id = getattr(record, "request_id", None) or current_request_id.get()
        if request_id:
            entry["request_id"] = request_id

        extra = getattr(record, "_extra", None)
        if extra:
            entry["extra"] = extra

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(service_name: str, level_name: str | None = None) -> logging.Logger:
    """
    Route the root logger to stdout as JSON.

    Called from the service lifespan; LOG_LEVEL applies when no level
    is passed.
    """
    level_name = (level_name or os.environ.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    logger = logging.getLogger(service_name)
    logger.info("Logging initialized", extra={"_extra": {"level": level_name}})
    return logger
