"""Retry strategies with exponential backoff.

Example:
    >>> from tabsync.execution.retry import ExponentialBackoff
    >>>
    >>> strategy = ExponentialBackoff(max_retries=3, base_delay=2.0)
    >>> [strategy.next_delay(attempt) for attempt in range(3)]
    [2.0, 4.0, 8.0]
"""

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tabsync.core.timestamps import utc_now

Sleep = Callable[[float], Awaitable[Any]]


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Args:
            attempt: Zero-based attempt number (0 = first retry)

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Determine if another retry should be attempted.

        Args:
            attempt: Number of failed attempts so far
            error: The exception that caused the failure
        """
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) + jitter

    Attributes:
        max_retries: Maximum number of retry attempts after the first call
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
        retry_on: Predicate deciding which errors are retryable (None = all)
    """

    max_retries: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25
    retry_on: Callable[[Exception], bool] | None = None

    def next_delay(self, attempt: int) -> float:
        delay = min(
            self.base_delay * (self.multiplier ** attempt),
            self.max_delay,
        )

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay)

        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        if attempt > self.max_retries:
            return False

        if error is not None and self.retry_on is not None:
            return self.retry_on(error)

        return True


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Tracks retry state for one logical call.

    ``sleep`` is awaited between attempts; it defaults to
    :func:`asyncio.sleep` so backoff waits are cooperative. A
    ``retry_after`` hint on the error raises the delay to at least that
    many seconds. When ``time_left`` is given, a retry whose delay would
    not finish within the remaining seconds is abandoned and the last
    error is raised instead.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_retries=3))
        >>> body = await ctx.run_async(send_request)
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Sleep = asyncio.sleep
    time_left: Callable[[], float] | None = None
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    out_of_time: bool = field(default=False, init=False)
    started_at: datetime = field(default_factory=utc_now, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)
    delays: list[float] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    async def run_async(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Execute async function with retry logic.

        Raises:
            The last exception if it is not retryable, retries are exhausted
            or the next delay would overrun ``time_left``.
        """
        while True:
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e, utc_now()))

                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)
                retry_after = getattr(e, "retry_after", None)
                if retry_after is not None:
                    delay = max(delay, retry_after)

                if self.time_left is not None and delay >= self.time_left():
                    self.out_of_time = True
                    raise

                self.delays.append(delay)

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                await self.sleep(delay)
