"""
Structured logging for the receiptdesk ingestion pipeline.

Everything goes through the ``receiptdesk`` logger. Module loggers created
with ``logging.getLogger(__name__)`` inside the package inherit its handler.
Set ``USE_JSON_LOGS=true`` for one JSON object per line.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger("receiptdesk")

# Keys shown inline by the plain formatter, in this order.
_INLINE_KEYS = ("placeholder_id", "stage", "user_id", "error_type")


def _level_from_env() -> int:
    return getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with the record's ``extra_fields`` merged in."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        payload.update(getattr(record, "extra_fields", None) or {})
        return json.dumps(payload, default=str)


class StageFormatter(logging.Formatter):
    """Human-readable lines; pipeline records get ``[stage placeholder]`` tags."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "extra_fields", None) or {}
        tags = [f"{key}={fields[key]}" for key in _INLINE_KEYS if fields.get(key)]
        return f"{line} [{' '.join(tags)}]" if tags else line


def configure_logging(json_logs: Optional[bool] = None) -> logging.Logger:
    """(Re)install the single stdout handler on the package logger."""
    if json_logs is None:
        json_logs = os.getenv("USE_JSON_LOGS", "false").lower() == "true"
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_logs else StageFormatter())
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(_level_from_env())
    logger.propagate = False
    return logger


configure_logging()


def _log(level: int, message: str, fields: Dict[str, Any], exception: Optional[BaseException] = None) -> None:
    logger.log(level, message, exc_info=exception, extra={"extra_fields": fields})


def log_request(method: str, path: str, status_code: int, duration_ms: float, **kwargs):
    """One line per HTTP request, emitted by the request middleware."""
    fields = {"type": "http_request", "method": method, "path": path,
              "status_code": status_code, "duration_ms": duration_ms}
    fields.update(kwargs)
    _log(logging.INFO, f"{method} {path} -> {status_code} ({duration_ms}ms)", fields)


def log_stage(placeholder_id: str, stage: str, message: str = "", level: int = logging.INFO, **kwargs):
    """Log one pipeline stage transition for a single file."""
    fields = {"type": "ingest_stage", "placeholder_id": placeholder_id, "stage": stage}
    fields.update(kwargs)
    _log(level, message or f"{placeholder_id} entered {stage}", fields)


def log_error(
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    exception: Optional[BaseException] = None,
):
    fields = {"type": "error", "error_type": error_type}
    fields.update(context or {})
    _log(logging.ERROR, message, fields, exception)
