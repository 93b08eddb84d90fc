"""
Club Identity Core - Structured JSON Logging

Provides structured logging for production environments.
Outputs JSON format for log aggregation (Datadog, CloudWatch, etc.)
Email addresses and phone numbers are masked before any handler sees them.
"""

import logging
import json
import re
import sys
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import traceback

EMAIL_PATTERN = re.compile(r"([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")
PHONE_PATTERN = re.compile(r"\+?\d[\d -]{6,}(\d{4})\b")

STANDARD_RECORD_FIELDS = [
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName"
]


def redact_pii(text: str) -> str:
    """Mask emails to ``a***@domain`` and phone numbers to ``***1234``."""
    text = EMAIL_PATTERN.sub(r"\1***@\2", text)
    return PHONE_PATTERN.sub(r"***\1", text)


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs JSON logs.
    Compatible with log aggregation services.
    """

    def __init__(self, service_name: str = "club-identity-core"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")
        self.hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "hostname": self.hostname,
        }

        log_data["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": redact_pii(str(record.exc_info[1])) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None,
            }

        # Add extra fields (audit events pass theirs through ``extra=``)
        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in STANDARD_RECORD_FIELDS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class PIIRedactionFilter(logging.Filter):
    """
    Masks email addresses and phone numbers in the rendered message.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_pii(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class RequestContextFilter(logging.Filter):
    """
    Adds request context to log records.
    """

    def __init__(self):
        super().__init__()
        self._request_id: Optional[str] = None
        self._service_name: Optional[str] = None

    def set_request_context(
        self,
        request_id: Optional[str] = None,
        service_name: Optional[str] = None
    ):
        self._request_id = request_id
        self._service_name = service_name

    def clear_request_context(self):
        self._request_id = None
        self._service_name = None

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = self._request_id
        record.caller_service = self._service_name
        return True


# Global request context filter instance
_request_context_filter: Optional[RequestContextFilter] = None


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "club-identity-core"
) -> logging.Logger:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production)
        service_name: Service name for log aggregation

    Returns:
        Configured root logger
    """
    global _request_context_filter

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))

    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))

    _request_context_filter = RequestContextFilter()
    handler.addFilter(_request_context_filter)
    handler.addFilter(PIIRedactionFilter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger


def set_request_context(
    request_id: Optional[str] = None,
    service_name: Optional[str] = None
):
    """Set request context for logging."""
    if _request_context_filter:
        _request_context_filter.set_request_context(request_id, service_name)


def clear_request_context():
    """Clear request context."""
    if _request_context_filter:
        _request_context_filter.clear_request_context()
