"""
Logging setup for the compensation cycle service.

Production writes one JSON object per line; development writes a short
colored line. LOG_LEVEL overrides the default level.

Cycle and job context travels through ``extra=``::

    logger.info("Cycle transitioned", extra={"tenant_id": 1, "cycle_id": cid})

Inside a request the active ``X-Request-ID`` is stamped on every record, so
service logs can be joined with the access line written by the timing hooks.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Attributes lifted from ``extra=`` into structured output
CONTEXT_FIELDS = (
    "request_id",
    "tenant_id",
    "cycle_id",
    "user_id",
    "job_name",
    "job_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "event_type",
)

_QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "alembic", "flask_limiter")


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class RequestIdFilter(logging.Filter):
    """Copy ``g.request_id`` onto records emitted during a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None and has_request_context():
            record.request_id = getattr(g, "request_id", None)
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
            **_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line output with the cycle/job context appended."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"
    SHOWN = ("tenant_id", "cycle_id", "job_name")

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = " ".join(
            f"{key.removesuffix('_id')}={getattr(record, key)}"
            for key in self.SHOWN
            if getattr(record, key, None) is not None
        )
        line = f"{stamp} {color}{record.levelname[:4]}{self.RESET} {record.name} | {record.getMessage()}"
        if tags:
            line += f"  [{tags}]"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" ({duration:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    JSON when the app runs without DEBUG outside of tests, readable lines
    otherwise. Repeated calls (one per test app) replace the handler.
    """
    testing = app.config.get("TESTING", False)
    structured = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if structured else "DEBUG").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level, level_name = logging.INFO, "INFO"

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter())
    handler.addFilter(RequestIdFilter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging ready (%s, %s)", level_name, "json" if structured else "text")
