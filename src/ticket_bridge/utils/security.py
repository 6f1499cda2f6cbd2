"""Security utilities for secret redaction and input sanitization.

This module implements fail-closed security patterns. All operations that
could potentially leak secrets will fail safely by blocking the operation
rather than proceeding with potentially sensitive data.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Sequence

log = structlog.get_logger()


class SecurityError(Exception):
    """Base exception for security-related errors."""


class RedactionError(SecurityError):
    """Raised when secret redaction fails."""


class ValidationError(SecurityError):
    """Raised when input validation fails."""


# Slack channel names: lowercase letters, digits, hyphens and underscores, max 80
CHANNEL_NAME_MAX_LENGTH = 80
_CHANNEL_NAME_INVALID = re.compile(r"[^a-z0-9_-]+")


class SecretRedactor:
    """Detects and redacts secrets from text.

    This class implements fail-closed behavior: if any regex pattern fails to
    compile or execute, it raises an exception rather than allowing potentially
    sensitive data to pass through.

    Usage:
        redactor = SecretRedactor()
        safe_text = redactor.redact(potentially_sensitive_text)

    Attributes:
        patterns: List of compiled regex patterns to detect secrets.
        placeholder: The string to replace secrets with (default: "[REDACTED]").
    """

    DEFAULT_PATTERNS: tuple[tuple[str, str], ...] = (
        # Generic patterns
        (
            r"(?i)(api[_-]?key|secret|token|password|credential)\s*[=:]\s*[\"']?[\w-]{16,}",
            "Generic secret",
        ),
        # Telegram bot token, also when embedded in a Bot API URL path
        (r"\b\d{6,12}:[A-Za-z0-9_-]{30,}", "Telegram bot token"),
        # Slack
        (r"xox[baprs]-[\w-]+", "Slack token"),
        (r"xapp-[\w-]+", "Slack app token"),
        (r"https://hooks\.slack\.com/services/[\w/]+", "Slack webhook URL"),
        # Database connection strings
        (
            r"(?i)(postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis|amqp)://[^:]+:[^@]+@[^\s]+",
            "Database connection string",
        ),
        # Private keys
        (
            r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----",
            "Private key header",
        ),
        # JWT tokens
        (
            r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*",
            "JWT token",
        ),
    )

    def __init__(
        self,
        placeholder: str = "[REDACTED]",
        custom_patterns: Sequence[tuple[str, str]] | None = None,
    ) -> None:
        """Initialize the SecretRedactor.

        Args:
            placeholder: String to replace detected secrets with.
            custom_patterns: Additional (pattern, name) tuples to detect.

        Raises:
            RedactionError: If any pattern fails to compile.
        """
        self.placeholder = placeholder
        self._pattern_names: dict[re.Pattern[str], str] = {}

        all_patterns = list(self.DEFAULT_PATTERNS)
        if custom_patterns:
            all_patterns.extend(custom_patterns)

        try:
            for pattern_str, name in all_patterns:
                compiled = re.compile(pattern_str)
                self._pattern_names[compiled] = name
        except re.error as e:
            msg = f"Failed to compile secret pattern '{pattern_str}': {e}"
            log.error("pattern_compilation_failed", pattern=pattern_str, error=str(e))
            raise RedactionError(msg) from e

    @property
    def patterns(self) -> list[re.Pattern[str]]:
        """Return the list of compiled patterns."""
        return list(self._pattern_names.keys())

    def redact(self, text: str) -> str:
        """Redact all secrets from the given text.

        Args:
            text: The text to scan and redact secrets from.

        Returns:
            The text with all detected secrets replaced with placeholder.

        Raises:
            RedactionError: If redaction fails for any reason.
        """
        if not text:
            return text

        try:
            result = text
            for pattern in self._pattern_names:
                result = pattern.sub(self.placeholder, result)
            return result
        except Exception as e:
            msg = f"Redaction failed: {e}"
            log.error("redaction_failed", error=str(e))
            raise RedactionError(msg) from e

    def has_secrets(self, text: str) -> bool:
        """Check if text contains any secrets.

        Raises:
            RedactionError: If checking fails for any reason.
        """
        if not text:
            return False

        try:
            return any(pattern.search(text) for pattern in self._pattern_names)
        except Exception as e:
            msg = f"Secret check failed: {e}"
            log.error("has_secrets_check_failed", error=str(e))
            raise RedactionError(msg) from e


def sanitize_channel_name(name: str) -> str:
    """Turn an arbitrary label into a valid workspace channel name.

    Args:
        name: Proposed channel name, e.g. ``"Billing-12"``.

    Returns:
        A lowercase name containing only letters, digits, ``-`` and ``_``.

    Raises:
        ValidationError: If nothing usable is left after sanitizing.
    """
    cleaned = _CHANNEL_NAME_INVALID.sub("-", name.lower()).strip("-_")
    cleaned = cleaned[:CHANNEL_NAME_MAX_LENGTH].rstrip("-_")
    if not cleaned:
        raise ValidationError(f"Cannot derive a channel name from {name!r}")
    return cleaned


def sanitize_for_logging(text: str) -> str:
    """Remove ANSI escape codes and control characters from text.

    This prevents log injection where relayed user content could
    create fake log entries or corrupt terminal output.

    Args:
        text: The text to sanitize.

    Returns:
        The text with ANSI codes and control characters removed.
    """
    if not text:
        return text

    text = re.sub(r"\x1b\[[0-9;]*m", "", text)
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)

    return text


def preview(text: str, limit: int = 40) -> str:
    """Return a short, log-safe preview of message content."""
    cleaned = sanitize_for_logging(text).replace("\n", " ")
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[: limit - 3] + "..."


def mask_config_value(key: str, value: str) -> str:
    """Mask sensitive config values for logging.

    Args:
        key: The configuration key name.
        value: The configuration value.

    Returns:
        The masked value if the key indicates sensitivity, otherwise the original.
    """
    sensitive_keys = {"token", "key", "secret", "password", "credential"}

    key_lower = key.lower()
    if any(s in key_lower for s in sensitive_keys):
        if len(value) > 8:
            return f"{value[:4]}...{value[-4:]}"
        return "***"

    return value
