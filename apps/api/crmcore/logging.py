from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from crmcore.context import get_log_context


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_CONTEXT_FIELDS = ("correlation_id", "actor_id", "actor_role")

# Structured fields passed through ``extra=`` by request, security, audit and crm loggers.
_KNOWN_FIELDS = {
    "method",
    "path",
    "status_code",
    "duration_ms",
    "route_group",
    "retry_after",
    "entity_type",
    "entity_id",
    "action",
    "event_type",
    "severity",
    "role",
    "reason",
    "updated",
    "failed",
    "status",
    "error",
}
_MAX_ERROR_LENGTH = 500


def _stamp(record: logging.LogRecord) -> None:
    for key, value in get_log_context().items():
        if not getattr(record, key, None):
            setattr(record, key, value)


class RequestContextFilter(logging.Filter):
    """Copies the correlation id and acting user onto every record a handler sees."""

    def filter(self, record: logging.LogRecord) -> bool:
        _stamp(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    _stamp(record)
    return record


class JsonLogFormatter(logging.Formatter):
    def __init__(self, service: str = "crmcore-api") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _CONTEXT_FIELDS:
            payload[key] = getattr(record, key, None)

        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging(service: str = "crmcore-api") -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crmcore_configured", False):
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter(service))
    handler.addFilter(RequestContextFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    # SQL echo and the Celery worker stay quieter than application loggers.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.WARNING)
    root_logger._crmcore_configured = True  # type: ignore[attr-defined]
