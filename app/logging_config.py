"""JSON logging configuration for the Chat2Act API."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

# Context keys promoted to top-level fields so one conversation can be filtered across services.
CORRELATION_KEYS = ("request_id", "tenant_id", "visitor_id")

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = dict(getattr(record, "context", None) or {})
        for key in CORRELATION_KEYS:
            if context.get(key) is not None:
                log_data[key] = context.pop(key)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: Optional[str] = None) -> None:
    """Route all records to stdout as JSON. Level defaults to ``LOG_LEVEL``."""
    from app.config import settings

    level = level or settings.log_level
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"chat2act.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Merges bound ids with a per-call ``context=`` kwarg."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs


def conversation_logger(logger: logging.Logger, tenant_id: str, visitor_id: str) -> LoggerAdapter:
    """Bind tenant and visitor ids to every record emitted for one turn."""
    return LoggerAdapter(logger, {"tenant_id": tenant_id, "visitor_id": visitor_id})
