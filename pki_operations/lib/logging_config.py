"""JSON logging for PKI operations and certificate lifecycle events."""

import logging
import os

from pythonjsonlogger import jsonlogger

BASE_FIELDS = frozenset({"timestamp", "level", "message", "exc_info", "funcName", "lineno"})

# Attached through ``extra`` by the lifecycle event sink
EVENT_FIELDS = frozenset({"event", "entity", "actor", "sourceAddress", "details"})


class LifecycleJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter keeping the base fields plus lifecycle event fields.

    Module, process, thread and logger name are dropped. Event fields only
    appear on records written by the event sink.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        if "levelname" in log_record:
            log_record["level"] = log_record.pop("levelname")

        allowed = BASE_FIELDS | EVENT_FIELDS
        for key in [key for key in log_record if key not in allowed]:
            log_record.pop(key)


def log_level_from_env(default: int = logging.INFO) -> int:
    """Level named by ``PKI_LOG_LEVEL``; unknown names fall back to the default."""
    level = logging.getLevelName(os.environ.get("PKI_LOG_LEVEL", "").upper())
    return level if isinstance(level, int) else default


def _setup_logger() -> logging.Logger:
    """Initialize and configure the singleton logger.

    Returns:
        Configured logger with LifecycleJsonFormatter
    """
    logger = logging.getLogger("pki_operations")

    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(
        LifecycleJsonFormatter(
            fmt="%(timestamp)s %(levelname)s %(funcName)s %(lineno)d %(message)s",
            timestamp=True,
        )
    )

    logger.setLevel(log_level_from_env())
    logger.addHandler(handler)
    logger.propagate = False

    return logger


LOGGER = _setup_logger()
