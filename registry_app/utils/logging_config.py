"""
Logging setup for the registry application.

Console and rotating-file handlers are attached to the Flask app logger and
the ``registry_app`` namespace. JSON output carries the ``extra`` fields that
exchange code attaches to its log records.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from pythonjsonlogger import jsonlogger

_HANDLER_MARKER = "_registry_handler"
TEXT_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
JSON_FORMAT = "%(message)s %(module)s %(lineno)d"


class JSONFormatter(jsonlogger.JsonFormatter):
    """Render records as one JSON object per line, ``extra`` fields included."""

    def __init__(self, *, app_name: str | None = None, app_version: str | None = None) -> None:
        static_fields = {key: value for key, value in (("app", app_name), ("version", app_version)) if value}
        super().__init__(JSON_FORMAT, static_fields=static_fields)

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name


def _build_formatter(app) -> logging.Formatter:
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JSONFormatter(app_name=app.config.get("APP_NAME"), app_version=app.config.get("APP_VERSION"))
    return logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()


def setup_logging(app) -> None:
    """
    Configure application logging from ``LOG_*`` settings.

    Safe to call repeatedly; handlers from an earlier call are replaced.
    """
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = _build_formatter(app)

    handlers: list[logging.Handler] = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers.append(logging.StreamHandler())
    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                os.path.join(log_dir, "registry.log"),
                maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024)),
                backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
                encoding="utf-8",
            )
        )

    for logger in (app.logger, logging.getLogger("registry_app")):
        _reset_handlers(logger)
        logger.setLevel(level)
        for handler in handlers:
            logger.addHandler(handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        setattr(handler, _HANDLER_MARKER, True)

    app.logger.debug(
        "Logging configured",
        extra={"log_level": logging.getLevelName(level), "log_handlers": [type(h).__name__ for h in handlers]},
    )

