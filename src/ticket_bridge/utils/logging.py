"""Structured logging configuration with secret sanitization.

This module provides logging configuration for ticket-bridge:
- Configurable log levels and output formats (JSON/console)
- Automatic secret sanitization in log output (bot tokens never reach logs)
- Context injection for correlation (ticket id, side, event id)
- File and console output support
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import MutableMapping
from enum import StrEnum
from pathlib import Path
from typing import Any, cast

import structlog
from structlog.typing import WrappedLogger

from ticket_bridge.utils.security import SecretRedactor

SERVICE_NAME = "ticket-bridge"

# Set by the watchdog in the environment of the child it supervises
SUPERVISED_ENV_VAR = "TICKET_BRIDGE_SUPERVISED"


class LogFormat(StrEnum):
    """Log output format options."""

    JSON = "json"
    CONSOLE = "console"


class LogLevel(StrEnum):
    """Log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# Global redactor instance for log sanitization
_redactor: SecretRedactor | None = None


def _get_redactor() -> SecretRedactor:
    """Get or create the global secret redactor."""
    global _redactor
    if _redactor is None:
        _redactor = SecretRedactor(placeholder="[REDACTED]")
    return _redactor


def sanitize_log_value(value: Any) -> Any:
    """Recursively sanitize secrets from log values.

    Args:
        value: Value to sanitize (can be nested dict/list/str)

    Returns:
        Sanitized value with secrets redacted
    """
    redactor = _get_redactor()

    if isinstance(value, str):
        return redactor.redact(value)
    elif isinstance(value, dict):
        return {k: sanitize_log_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return type(value)(sanitize_log_value(v) for v in value)
    else:
        return value


def secret_sanitizer(
    logger: logging.Logger,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor to sanitize secrets from log entries.

    Args:
        logger: Logger instance (unused)
        method_name: Log method name (unused)
        event_dict: Event dictionary to process

    Returns:
        Sanitized event dictionary
    """
    result = sanitize_log_value(event_dict)
    return cast(MutableMapping[str, Any], result)


def add_context_processor(
    logger: logging.Logger,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Add the service name, version and supervision flag to every entry."""
    event_dict["service"] = SERVICE_NAME

    try:
        from ticket_bridge._version import __version__

        event_dict["version"] = __version__
    except (ImportError, RuntimeError):
        pass

    if os.environ.get(SUPERVISED_ENV_VAR):
        event_dict["supervised"] = True

    return event_dict


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    log_format: LogFormat | str = LogFormat.JSON,
    file_path: Path | str | None = None,
    file_enabled: bool = False,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format (json or console)
        file_path: Path to log file (if file logging enabled)
        file_enabled: Whether to enable file logging

    Example:
        # For development (colored console output)
        configure_logging(level="DEBUG", log_format="console")

        # For production (JSON for log aggregation)
        configure_logging(level="INFO", log_format="json")
    """
    if isinstance(level, str):
        level = LogLevel(level.upper())
    if isinstance(log_format, str):
        log_format = LogFormat(log_format.lower())

    numeric_level = getattr(logging, level.value)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_context_processor,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        secret_sanitizer,  # Always sanitize secrets
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == LogFormat.JSON:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True, exception_formatter=structlog.dev.plain_traceback
            )
        )

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    handlers.append(console_handler)

    if file_enabled and file_path:
        try:
            file_path = Path(file_path)
            file_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(file_path)
            file_handler.setLevel(numeric_level)
            handlers.append(file_handler)
        except OSError as e:
            # Keep running with console output only
            console_logger = logging.getLogger("ticket_bridge.logging")
            console_logger.warning(f"Could not create log file {file_path}: {e}")

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )

    # httpx logs every request URL at INFO, and Bot API URLs embed the token
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str | None = None) -> WrappedLogger:
    """Get a structured logger instance."""
    return cast(WrappedLogger, structlog.get_logger(name))


def bind_context(**kwargs: Any) -> None:
    """Bind contextual variables for all subsequent log calls.

    These values will be included in all log entries until cleared.

    Example:
        bind_context(ticket_id=42, side="origin")
        log.info("relaying_message")  # Includes ticket_id and side
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove contextual variables."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound contextual variables."""
    structlog.contextvars.clear_contextvars()


class LogEventNames:
    """Standard log event names for consistency.

    Use these constants to ensure consistent event naming across
    the codebase, making log aggregation and alerting easier.
    """

    # Service lifecycle
    SERVICE_STARTING = "service_starting"
    SERVICE_STARTED = "service_started"
    SERVICE_STOPPING = "service_stopping"
    SERVICE_STOPPED = "service_stopped"

    # Ticket lifecycle
    TICKET_CREATED = "ticket_created"
    TICKET_TRANSITION = "ticket_transition"
    TICKET_TRANSITION_REJECTED = "ticket_transition_rejected"
    CHANNEL_CREATED = "destination_channel_created"

    # Relay
    MESSAGE_PERSISTED = "message_persisted"
    MESSAGE_RELAYED = "message_relayed"
    MESSAGE_QUEUED = "message_queued"
    MESSAGE_DUPLICATE = "message_duplicate_ignored"
    QUEUE_DRAINED = "queue_drained"
    DEGRADED_NOTICE_SENT = "degraded_notice_sent"

    # Adapter availability
    ADAPTER_UNAVAILABLE = "adapter_unavailable"
    ADAPTER_RECOVERED = "adapter_recovered"
    ADAPTER_FATAL = "adapter_fatal_error"
    OUTAGE_ESCALATED = "outage_budget_exceeded"

    # Watchdog
    CHILD_STARTED = "child_started"
    CHILD_EXITED = "child_exited"
    RESTART_SCHEDULED = "restart_scheduled"

    # Health checks
    HEALTH_CHECK_START = "health_check_start"
    HEALTH_CHECK_COMPLETE = "health_check_complete"
