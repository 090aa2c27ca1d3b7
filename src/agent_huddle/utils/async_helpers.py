"""Async utilities shared by adapters and core components.

This module provides:
- The exception hierarchy core components catch at their boundaries
- Retry decorators with exponential backoff
- Rate limiting for outbound chat posts
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
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


class HuddleError(Exception):
    """Base exception for all agent-huddle errors."""


class CompletionError(HuddleError):
    """An AI completion failed or returned unusable output."""


class ContextFetchError(HuddleError):
    """External context (issue, PR, URL) could not be fetched."""


class ChatPostError(HuddleError):
    """A message or reaction could not be delivered to the chat transport."""


class RateLimitError(HuddleError):
    """Rate limit exceeded.

    Attributes:
        retry_after: Number of seconds to wait before retrying, if known.
    """

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TimeoutError(HuddleError):
    """Operation timed out."""


# =============================================================================
# Retry Decorator
# =============================================================================


def _log_retry(retry_state: RetryCallState) -> None:
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
    """Create a retry decorator with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts.
        min_wait: Minimum wait time between retries (seconds).
        max_wait: Maximum wait time between retries (seconds).
        retry_on: Exception types that trigger a retry.

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

    Example:
        limiter = RateLimiter(rate=1, capacity=3)

        async with limiter:
            await client.chat_postMessage(...)
    """

    def __init__(self, rate: float, capacity: float | None = None) -> None:
        """Initialize the rate limiter.

        Args:
            rate: Number of operations allowed per second.
            capacity: Maximum burst size. Defaults to ``rate``.
        """
        self._rate = rate
        self._capacity = capacity if capacity is not None else rate
        self._tokens = self._capacity
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    @property
    def available_tokens(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_update
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._last_update = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens from the bucket, waiting if necessary.

        Raises:
            ValueError: If tokens exceeds capacity.
        """
        if tokens > self._capacity:
            raise ValueError(f"Cannot acquire {tokens} tokens; capacity is {self._capacity}")

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


class ChannelRateLimiter:
    """Rate limiter with one bucket per channel.

    Slack throttles ``chat.postMessage`` per channel, and several personas
    may be posting into the same channel from concurrent discussions.

    Example:
        limiter = ChannelRateLimiter(per_channel_rate=1, per_channel_capacity=3)
        await limiter.acquire("C123")
    """

    def __init__(
        self,
        per_channel_rate: float,
        per_channel_capacity: float | None = None,
    ) -> None:
        self._per_channel_rate = per_channel_rate
        self._per_channel_capacity = per_channel_capacity
        self._channel_limiters: dict[str, RateLimiter] = {}

    def _get_channel_limiter(self, channel: str) -> RateLimiter:
        if channel not in self._channel_limiters:
            self._channel_limiters[channel] = RateLimiter(
                self._per_channel_rate,
                self._per_channel_capacity,
            )
        return self._channel_limiters[channel]

    async def acquire(self, channel: str, tokens: float = 1.0) -> None:
        await self._get_channel_limiter(channel).acquire(tokens)
