from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from dealbridge.context import get_company_id, get_correlation_id
from dealbridge.core.config import Settings, get_settings


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_STRUCTURED_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "deal_id",
        "project_number",
        "department_code",
        "year",
        "sequence",
        "is_new_project",
        "tenant_id",
        "service",
        "key",
        "retry_after_seconds",
        "contact_id",
        "accounting_project_id",
        "task_count",
        "status",
        "error",
    }
)
_MAX_ERROR_LENGTH = 500
_NOISY_LOGGERS = ("httpx", "httpcore")
_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"

_configured = False
_default_record_factory = logging.getLogRecordFactory()


def _stamp_correlation_id(record: logging.LogRecord) -> logging.LogRecord:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _stamp_correlation_id(_default_record_factory(*args, **kwargs))


class RequestContextFilter(logging.Filter):
    """Stamps the request correlation id on records built before the factory was installed."""

    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_correlation_id(record)
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        company_id = getattr(record, "company_id", None) or get_company_id()
        if company_id:
            payload["company_id"] = company_id

        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in _STRUCTURED_FIELDS and key not in _BASE_RECORD_KEYS
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "text":
        return logging.Formatter(_TEXT_FORMAT)
    return JsonLogFormatter()


def configure_logging(settings: Settings | None = None) -> None:
    global _configured
    if _configured:
        return

    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter(settings.log_format))
    handler.addFilter(RequestContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_record_factory)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    _configured = True
