"""
Structured Logging Configuration Module

JSON-formatted logging for servicing operations. Records can carry the
credit and installment they concern so a payment can be traced end to end.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


STRUCTURED_FIELDS = ("credit_id", "installment_id", "action", "actor_role", "extra")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "loan_servicing",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the root application logger
        log_format: "json" for structured output, anything else for plain text
        log_file: Optional file path; stdout when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "loan_servicing") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               credit_id: Optional[str] = None, installment_id: Optional[str] = None,
               action: Optional[str] = None, actor_role: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a servicing action with structured fields.

    Args:
        logger: Logger instance
        level: Log level name (info, warning, error, ...)
        message: Log message
        credit_id: Credit the action concerns
        installment_id: Installment the action concerns
        action: Action being performed
        actor_role: Role of the requester
        extra: Additional structured data
    """
    fields = {
        "credit_id": credit_id,
        "installment_id": installment_id,
        "action": action,
        "actor_role": actor_role,
        "extra": extra,
    }
    logger.log(
        getattr(logging, level.upper()),
        message,
        extra={k: v for k, v in fields.items() if v is not None}
    )
