"""Structured logging for Aether Guard.

Console output is coloured in development and JSON elsewhere. With file
logging on, three rotating JSON files are written under ``log_directory``:

- ``<prefix>.log``: everything at the configured level
- ``<prefix>_error.log``: WARNING and above
- ``<prefix>_security.log``: only records from the security event recorder
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

from aether_guard.config import Settings, get_settings

# stdlib logger that emits one record per security event
SECURITY_EVENT_LOGGER = "aether_guard.security.recorder"

# Third-party loggers held at WARNING
_QUIET_LOGGERS = ("aiohttp.access", "asyncpg")


class SecurityEventFilter(logging.Filter):
    """Pass only records emitted by the security event recorder."""

    def __init__(self) -> None:
        super().__init__(SECURITY_EVENT_LOGGER)


def _rotating_handler(path: str, settings: Settings, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        filename=path,
        maxBytes=settings.log_file_max_bytes,
        backupCount=settings.log_file_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    return handler


def _file_handlers(settings: Settings, level: int) -> list[logging.Handler]:
    """Build the rotating file handlers, or none if the directory is unusable."""
    try:
        Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
        handlers: list[logging.Handler] = [
            _rotating_handler(settings.log_file_path, settings, level)
        ]
        if settings.log_error_file_enabled:
            handlers.append(
                _rotating_handler(settings.error_log_file_path, settings, logging.WARNING)
            )
        if settings.log_security_file_enabled:
            security = _rotating_handler(settings.security_log_file_path, settings, logging.INFO)
            security.addFilter(SecurityEventFilter())
            handlers.append(security)
    except OSError as e:
        # Fall back to console-only logging
        print(f"Warning: Could not set up file logging: {e}", file=sys.stderr)
        return []
    return handlers


def _formatter(renderer: structlog.typing.Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer]
    )


def setup_logging() -> None:
    """Configure structlog on top of stdlib logging handlers."""
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(
        _formatter(
            structlog.dev.ConsoleRenderer(colors=True)
            if settings.is_development
            else structlog.processors.JSONRenderer()
        )
    )

    handlers: list[logging.Handler] = [console]
    if settings.log_to_file:
        json_formatter = _formatter(structlog.processors.JSONRenderer())
        for handler in _file_handlers(settings, level):
            handler.setFormatter(json_formatter)
            handlers.append(handler)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in handlers:
        root.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
