"""Async utility functions and the bridge error taxonomy.

This module provides:
- Custom exceptions shared by adapters, storage and the bridge core
- Retry decorators with exponential backoff (platform handshakes)
- Rate limiting with token bucket algorithm
- Timeout wrappers for adapter calls
- Per-key locks used to serialize work on a single ticket
"""

from __future__ import annotations

import asyncio
import builtins
import time
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable, Hashable
from contextlib import asynccontextmanager
from typing import Any, ParamSpec, TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

log = structlog.get_logger()

P = ParamSpec("P")
T = TypeVar("T")


# =============================================================================
# Custom Exceptions
# =============================================================================


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class PlatformError(BridgeError):
    """An adapter call against a chat platform failed."""


class TransientPlatformError(PlatformError):
    """Network, handshake or server-side failure that is worth retrying."""


class TimeoutError(TransientPlatformError):
    """Operation timed out."""


class RateLimitError(TransientPlatformError):
    """Rate limit exceeded.

    Attributes:
        retry_after: Number of seconds to wait before retrying, if known.
    """

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class FatalPlatformError(PlatformError):
    """Bad credentials or missing permissions; retrying will not help."""


class DeliveryRefused(PlatformError):
    """The platform refused one message for good (e.g. the user blocked the bot).

    The platform itself is healthy, so this does not count as an outage.
    """


class PersistenceError(BridgeError):
    """The datastore could not complete an operation."""


class NotFound(BridgeError):
    """A ticket, user or category does not exist."""


class TicketNotFound(NotFound):
    """No ticket matches the given id or channel."""


class UserNotFound(NotFound):
    """No user matches the given id."""


class CategoryNotFound(NotFound):
    """No category matches the given id or name."""


# =============================================================================
# Retry Decorator
# =============================================================================


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts for debugging."""
    if retry_state.outcome is None:
        return

    exception = retry_state.outcome.exception()
    if exception:
        log.warning(
            "retrying_operation",
            attempt=retry_state.attempt_number,
            exception_type=type(exception).__name__,
            exception_message=str(exception),
            wait_time=retry_state.next_action.sleep if retry_state.next_action else 0,
        )


def create_retry(
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 30.0,
    retry_on: tuple[type[Exception], ...] = (httpx.TimeoutException, httpx.NetworkError),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Create a customized retry decorator.

    Args:
        max_attempts: Maximum number of retry attempts.
        min_wait: Minimum wait time between retries (seconds).
        max_wait: Maximum wait time between retries (seconds).
        retry_on: Tuple of exception types to retry on.

    Returns:
        A retry decorator configured with the given parameters.
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry,
        reraise=True,
    )


# =============================================================================
# Rate Limiter
# =============================================================================


class RateLimiter:
    """Token bucket rate limiter for async operations.

    Tokens are added to the bucket at a fixed rate, and each operation
    consumes one token. If no tokens are available, the operation waits
    until a token becomes available.

    Example:
        limiter = RateLimiter(rate=30, capacity=30)

        async with limiter:
            await client.post("sendMessage", json=payload)
    """

    def __init__(self, rate: float, capacity: float | None = None) -> None:
        """Initialize the rate limiter.

        Args:
            rate: Number of operations allowed per second.
            capacity: Maximum number of tokens in the bucket (burst capacity).
                     Defaults to rate (no bursting beyond 1 second).
        """
        self._rate = rate
        self._capacity = capacity if capacity is not None else rate
        self._tokens = self._capacity
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    @property
    def rate(self) -> float:
        """Return the configured rate limit (operations per second)."""
        return self._rate

    @property
    def available_tokens(self) -> float:
        """Return the current number of available tokens."""
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_update
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._last_update = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens from the bucket, waiting if necessary.

        Args:
            tokens: Number of tokens to acquire.

        Raises:
            ValueError: If tokens exceeds capacity.
        """
        if tokens > self._capacity:
            msg = f"Cannot acquire {tokens} tokens; capacity is {self._capacity}"
            raise ValueError(msg)

        async with self._lock:
            self._refill()

            if self._tokens >= tokens:
                self._tokens -= tokens
                return

            deficit = tokens - self._tokens
            wait_time = deficit / self._rate

            log.debug("rate_limiter_waiting", wait_time=wait_time, deficit=deficit)
            await asyncio.sleep(wait_time)

            self._refill()
            self._tokens -= tokens

    async def __aenter__(self) -> RateLimiter:
        await self.acquire()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        pass


# =============================================================================
# Per-key Locks
# =============================================================================


class KeyedLock:
    """A family of asyncio locks addressed by key.

    Work for one key is serialized while different keys proceed in parallel.
    Locks are created on demand and dropped once nobody holds or waits on
    them, so the table only grows with the number of busy keys.

    Example:
        locks = KeyedLock()

        async with locks.hold(("ticket", 42)):
            ...
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def locked(self, key: Hashable) -> bool:
        """Return True if someone currently holds the lock for ``key``."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


# =============================================================================
# Timeout Utilities
# =============================================================================


async def with_timeout(
    coro: Awaitable[T],
    timeout: float,
    error_message: str | None = None,
) -> T:
    """Execute an awaitable with a timeout.

    Args:
        coro: The coroutine to execute.
        timeout: Timeout in seconds.
        error_message: Custom error message for timeout.

    Returns:
        The result of the coroutine.

    Raises:
        TimeoutError: If the operation times out.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except builtins.TimeoutError as e:
        msg = error_message or f"Operation timed out after {timeout}s"
        log.warning("operation_timeout", timeout=timeout)
        raise TimeoutError(msg) from e
