"""
Logging setup for roomflow.

The format comes from ``LOG_FORMAT`` in the app config: ``json`` lines in
production, a colored one-line format elsewhere. Services put their scope
on the record through ``extra`` and both formats pick it up:

    logger.info("Stages merged", extra={"room_id": room_id, "event_type": "stage.merge"})
"""

import json
import logging
import sys
from datetime import datetime, timezone

SCOPE_FIELDS = (
    "org_id",
    "project_id",
    "room_id",
    "instance_id",
    "item_id",
    "stage_id",
    "template_id",
    "event_type",
)

# Only these show up in the readable format; the rest is JSON-only noise.
_READABLE_SCOPE = ("room_id", "stage_id", "item_id")


def record_scope(record: logging.LogRecord, fields=SCOPE_FIELDS) -> dict:
    return {
        name: getattr(record, name)
        for name in fields
        if getattr(record, name, None) is not None
    }


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        payload.update(record_scope(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ReadableFormatter(logging.Formatter):
    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        color = self.LEVEL_COLORS.get(record.levelno, "")
        line = f"{color}{stamp} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"
        scope = record_scope(record, _READABLE_SCOPE)
        if scope:
            line += " [" + " ".join(f"{k}={v}" for k, v in scope.items()) + "]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger for this app.

    Existing root handlers are replaced, so building several apps in one
    process (the test suite does) never duplicates output.
    """
    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO
    use_json = app.config.get("LOG_FORMAT") == "json"

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if use_json else ReadableFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    app.logger.setLevel(level)

    # SQL echo and alembic chatter stay at WARNING unless asked for directly
    for name in ("sqlalchemy.engine", "alembic", "werkzeug"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if not app.config.get("TESTING"):
        app.logger.info("Logging ready (level=%s, format=%s)",
                        logging.getLevelName(level), "json" if use_json else "readable")
