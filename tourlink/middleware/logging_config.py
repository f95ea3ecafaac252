"""
Logging setup for the Tourlink service.

Production writes one JSON object per line; development and the test suite
get a short coloured line. LOG_LEVEL overrides the level everywhere.
Records emitted while a request is active carry its request id and actor.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Record attributes copied into the JSON payload when set
_CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "user_role",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

_LEVEL_COLOURS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"

_QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "urllib3")


class RequestContextFilter(logging.Filter):
    """Stamp the request id and acting user onto records logged inside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            for attr in ("request_id", "user_id", "user_role"):
                if getattr(record, attr, None) is None:
                    setattr(record, attr, g.get(attr))
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        colour = _LEVEL_COLOURS.get(record.levelno, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{colour}{stamp} {record.levelname:<8}{_RESET} {record.name}: {record.getMessage()}"

        request_id = getattr(record, "request_id", None)
        if request_id:
            line += f" (req {request_id})"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single root handler; JSON unless the app runs in debug or testing."""
    structured = not (app.debug or app.testing)

    level_name = os.getenv("LOG_LEVEL", "INFO" if structured else "DEBUG").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter())
    handler.addFilter(RequestContextFilter())

    # create_app() can run several times in one process
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not app.testing:
        app.logger.info("Logging ready: level=%s format=%s",
                        level_name, "json" if structured else "readable")
