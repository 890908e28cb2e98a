"""
Structured logging configuration.

- Development: human-readable colored format with a ``[CAP/cap-17]`` case tag
- Production: JSON format (log aggregator compatible)
- Log level: controlled via LOG_LEVEL env variable / config

Every record emitted while a request is being handled carries the request
id and the authenticated actor, so an engine log line ("transition
applied", "COI gate blocked") can be joined with the access log line of
the call that caused it.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Structured fields services attach through ``extra={...}``
_EXTRA_FIELDS = (
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "actor_id",
    "role",
    "entity_type",
    "entity_id",
    "transition",
    "organization_id",
    "definition_id",
    "clock_id",
    "coi_id",
    "override_id",
    "job_name",
)


class RequestContextFilter(logging.Filter):
    """Stamp request id / actor onto records that did not set them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = getattr(g, "request_id", None)
            if getattr(record, "actor_id", None) is None:
                record.actor_id = getattr(g, "current_user_id", None)
        return True


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Human-readable colored formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now().strftime("%H:%M:%S")
        entity_type = getattr(record, "entity_type", None)
        entity_id = getattr(record, "entity_id", None)
        case = f" [{entity_type}/{entity_id}]" if entity_type and entity_id else ""
        clock_id = getattr(record, "clock_id", None)
        clock = f" clock={clock_id}" if clock_id is not None else ""
        base = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}{case}: {record.getMessage()}{clock}"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging(app):
    """
    Set up structured logging for the Flask app.

    Level comes from LOG_LEVEL (config, then env); default DEBUG in dev,
    INFO in prod.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    # Single root handler; clearing avoids duplicates across test app instances
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
