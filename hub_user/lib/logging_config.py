"""JSON logging for hub user commands.

Log lines carry the provisioning context passed through ``extra`` (state
names, HTTP method and path). Fields that could hold a credential are
replaced with a placeholder before the record is serialized.
"""

import logging

from pythonjsonlogger import jsonlogger

REDACTED = "[redacted]"

BASE_FIELDS = frozenset({"timestamp", "level", "message", "exc_info", "funcName", "lineno"})
CONTEXT_FIELDS = frozenset({"from_state", "to_state", "state", "method", "path", "status", "command"})
SECRET_FIELDS = frozenset({"token", "password", "local_password", "private_key", "authorization"})


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter limited to base fields plus provisioning context."""

    def add_fields(self, log_record, record, message_dict):
        """Keep base and context fields, redact secrets and drop the rest.

        Args:
            log_record: Dict to be logged as JSON
            record: LogRecord object from logging framework
            message_dict: Dict containing message and args
        """
        super().add_fields(log_record, record, message_dict)

        if "levelname" in log_record:
            log_record["level"] = log_record.pop("levelname")

        for key in list(log_record):
            if key in SECRET_FIELDS:
                log_record[key] = REDACTED
            elif key not in BASE_FIELDS and key not in CONTEXT_FIELDS:
                log_record.pop(key)


def _setup_logger() -> logging.Logger:
    """Initialize the shared ``hub_user`` logger.

    Commands print their own output, so the logger starts at WARNING and
    writes JSON lines to stderr.
    """
    logger = logging.getLogger("hub_user")

    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(
        CustomJsonFormatter(
            fmt="%(timestamp)s %(levelname)s %(funcName)s %(lineno)d %(message)s",
            timestamp=True,
        )
    )

    logger.setLevel(logging.WARNING)
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def set_log_level(level: int) -> None:
    """Change the level of the shared logger (logging.INFO for --verbose)."""
    LOGGER.setLevel(level)


LOGGER = _setup_logger()
