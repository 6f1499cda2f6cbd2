"""Utility functions and helpers.

This module provides various utilities for ticket-bridge:
- security: Secret redaction, channel name sanitizing
- async_helpers: Error taxonomy, retry, rate limiting, per-key locks
- logging: Structured logging with secret sanitization
- health: Health check utilities
- metrics: Application metrics collection
"""

from ticket_bridge.utils.health import (
    HealthChecker,
    HealthReport,
    HealthStatus,
)
from ticket_bridge.utils.logging import (
    LogFormat,
    LogLevel,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)
from ticket_bridge.utils.metrics import (
    Counter,
    Gauge,
    Histogram,
    MetricsRegistry,
    Timer,
    get_metrics,
)
from ticket_bridge.utils.security import (
    RedactionError,
    SecretRedactor,
    SecurityError,
    ValidationError,
)

__all__ = [
    # Metrics
    "Counter",
    "Gauge",
    # Health
    "HealthChecker",
    "HealthReport",
    "HealthStatus",
    "Histogram",
    # Logging
    "LogFormat",
    "LogLevel",
    "MetricsRegistry",
    # Security
    "RedactionError",
    "SecretRedactor",
    "SecurityError",
    "Timer",
    "ValidationError",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "get_metrics",
    "unbind_context",
]
