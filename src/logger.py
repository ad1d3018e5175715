"""
Structured logging setup for the fashion trend service.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

# Configure logging level from environment variables with default fallback
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
DEBUG = os.environ.get("DEBUG", "false").lower() == "true"

if DEBUG:
    LOG_LEVEL = "DEBUG"

# LogRecord attributes that are not user context
_RESERVED_ATTRS = frozenset({
    "args", "asctime", "created", "exc_info", "exc_text", "filename",
    "funcName", "id", "levelname", "levelno", "lineno", "module",
    "msecs", "message", "msg", "name", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "taskName", "thread", "threadName",
})


class JsonFormatter(logging.Formatter):
    """
    Formats log records as one JSON object per line.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_record: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_record[key] = value

        # Context may hold hashes, ids or exceptions; anything non-JSON is stringified
        return json.dumps(log_record, default=str)


def get_logger(name: str) -> logging.Logger:
    """
    Creates and returns a logger with the specified name,
    configured for structured logging with a JSON handler.

    Args:
        name: The name of the logger, typically __name__.

    Returns:
        A configured logger instance.
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    # Records are emitted once here, not again by the root logger
    logger.propagate = False

    return logger


def configure_domain_logging() -> None:
    """Route the domain package's plain loggers through the JSON handler."""
    domain_logger = get_logger("fashion_core")
    domain_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))


# Base logger for the application
logger = get_logger("fashion_trends")


def log_with_context(
    level: int,
    msg: str,
    context: Optional[Dict[str, Any]] = None,
    exc_info: Optional[BaseException] = None,
    **kwargs: Any
) -> None:
    """
    Log a message with additional context.

    Args:
        level: The logging level (e.g., logging.INFO).
        msg: The log message.
        context: Optional dictionary with additional context.
        exc_info: Exception whose traceback is attached to the record.
        **kwargs: Additional key-value pairs to include in the log.
    """
    if context:
        kwargs.update(context)

    extra = {"context": kwargs} if kwargs else {}
    logger.log(level, msg, extra=extra, exc_info=exc_info)


def debug(msg: str, context: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
    """Log a DEBUG level message with context."""
    log_with_context(logging.DEBUG, msg, context, **kwargs)


def info(msg: str, context: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
    """Log an INFO level message with context."""
    log_with_context(logging.INFO, msg, context, **kwargs)


def warning(msg: str, context: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
    """Log a WARNING level message with context."""
    log_with_context(logging.WARNING, msg, context, **kwargs)


def error(msg: str, context: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
    """Log an ERROR level message with context."""
    log_with_context(logging.ERROR, msg, context, **kwargs)


def exception(
    msg: str,
    exc: Optional[BaseException] = None,
    context: Optional[Dict[str, Any]] = None,
    **kwargs: Any
) -> None:
    """
    Log an exception with context and traceback.

    Args:
        msg: The error message.
        exc: The exception object.
        context: Additional context information.
        **kwargs: Additional key-value pairs for the log.
    """
    if exc is not None:
        kwargs["exception_type"] = type(exc).__name__
        kwargs["exception_message"] = str(exc)
        code = getattr(exc, "code", None)
        if isinstance(code, str):
            kwargs["error_code"] = code

    log_with_context(logging.ERROR, msg, context, exc_info=exc, **kwargs)
