"""Centralized logging configuration for the sync engine."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Any

import structlog

from delta_sync.models.config import LoggingConfig

# Rotating file output: 10MB per file, 5 backups
_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUPS = 5


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            ],
        ),
    ]


def configure_logging(config: LoggingConfig | None = None) -> None:
    """
    Configure structured logging for the sync engine.

    JSON output is meant for scheduled runs, console output for interactive
    use. When a log file is configured, records are also written to a
    rotating file.

    Args:
        config: Logging settings. Defaults to LoggingConfig() when omitted.

    Example:
        >>> configure_logging(LoggingConfig(log_level="DEBUG", json_logs=False))
        >>> log = structlog.stdlib.get_logger()
        >>> log.info("sync_started", resource="users")
    """
    config = config or LoggingConfig()
    numeric_level = getattr(logging, config.log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        stream=sys.stdout,
        force=True,
    )

    if config.log_file:
        file_handler = RotatingFileHandler(
            config.log_file,
            maxBytes=_MAX_LOG_BYTES,
            backupCount=_LOG_BACKUPS,
        )
        file_handler.setLevel(numeric_level)
        logging.root.addHandler(file_handler)

    processors = _shared_processors()
    if config.json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_sync_context(resource: str, **extra: Any) -> None:
    """Attach the tracked collection to every log line emitted by this context."""
    structlog.contextvars.bind_contextvars(resource=resource, **extra)


def clear_sync_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Optional logger name. If None, uses the calling module's name.

    Returns:
        Configured structlog logger
    """
    return structlog.stdlib.get_logger(name)
