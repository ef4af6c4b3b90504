"""
Structured logging configuration using structlog.
Provides JSON-formatted logs for production and human-readable logs for development.
"""

import logging
import sys
from typing import Any, cast

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from app.core.config import get_settings

# Event keys that must never reach a log sink, whatever the caller passes.
REDACTED_LOG_KEYS: frozenset[str] = frozenset(
    {"plaintext", "cipher_text", "iv", "auth_tag", "key_material", "snapshot", "value"}
)


def redact_sensitive_keys(
    _logger: WrappedLogger, _method_name: str, event_dict: EventDict
) -> EventDict:
    """Replace values of protected keys with a fixed marker."""
    for key in REDACTED_LOG_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def configure_logging() -> None:
    """
    Configure structured logging for the application.

    In development mode, logs are formatted for human readability.
    In every other environment, logs are JSON-formatted for log aggregation systems.
    """
    settings = get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        redact_sensitive_keys,
    ]

    processors: list[Processor]
    if settings.environment == "development":
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )


def get_logger(name: str, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance with the given name and bound context."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name, **initial_values))
