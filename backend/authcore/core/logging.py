"""JSON logging for the API and the maintenance jobs."""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

from authcore.core.config import settings

# Never emitted even if a caller passes them in `extra`
REDACTED_FIELDS = frozenset({"password", "code", "token", "secret", "refresh_token", "access_token"})
QUIET_LOGGERS = {"uvicorn.access": logging.WARNING, "sqlalchemy.engine": logging.WARNING}


class AuthJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per record keyed by ``event``."""

    def add_fields(self, log_record: dict[str, Any], record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record.setdefault("event", record.getMessage())
        for field in REDACTED_FIELDS.intersection(log_record):
            log_record[field] = "[redacted]"
        log_record.pop("message", None)


def setup_logging(level: str | None = None) -> None:
    """Route everything through a single stdout JSON handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(AuthJsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel((level or settings.LOG_LEVEL).upper())

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
