from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_log_context
from app.core.config import get_settings


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_KNOWN_FIELDS = {
    "method",
    "path",
    "status_code",
    "duration_ms",
    "client_ip",
    "event_name",
    "lead_id",
    "workspace_id",
    "project_id",
    "submission_id",
    "automation_id",
    "node_id",
    "node_type",
    "scheduled_step_id",
    "run_state",
    "outcome",
    "status",
    "error",
}


def _attach_context(record: logging.LogRecord) -> logging.LogRecord:
    for key, value in get_log_context().items():
        if not getattr(record, key, None):
            setattr(record, key, value)
    return record


class LogContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _attach_context(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _attach_context(_DEFAULT_RECORD_FACTORY(*args, **kwargs))


_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s correlation_id=%(correlation_id)s"


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        automation_run = getattr(record, "automation_run", None)
        if automation_run:
            payload["automation_run"] = automation_run

        extras: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key.startswith("_"):
                continue
            if key in _BASE_RECORD_KEYS:
                continue
            if key in {"args", "msg"}:
                continue
            if key in _KNOWN_FIELDS:
                extras[key] = value

        if record.exc_info:
            extras["exception"] = self.formatException(record.exc_info)

        error_value = extras.get("error")
        if isinstance(error_value, str):
            extras["error"] = error_value[:500]

        payload["fields"] = extras
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_leadflow_configured", False):
        return

    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    if settings.log_format == "text":
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    else:
        handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._leadflow_configured = True  # type: ignore[attr-defined]
