"""
Retry and rate-limiting helpers for provider calls.

``RetryPolicy`` re-runs an async operation with exponential backoff.  The
backoff is an ``await asyncio.sleep`` so a retrying call never holds a thread;
other turns keep running on the loop while one waits.

``RateLimiter`` is an optional client-side sliding-window throttle that
providers ``acquire()`` before each HTTP request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, TypeVar

from craftchat.conversation.errors import classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


class RetryPolicy:
    """Run an operation up to ``max_retries`` times with doubling delays.

    The delay before attempt *n + 1* is ``base_delay * 2 ** (n - 1)``.  Only
    recoverable failures (see ``ErrorKind.recoverable``) are retried; anything
    else is re-raised at once without using up the remaining attempts.

    Attributes:
        max_retries: Total number of attempts (a value below 1 means 1).
        base_delay: Delay in seconds after the first failed attempt.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: SleepFunc | None = None,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep or asyncio.sleep

    @property
    def attempts(self) -> int:
        return max(1, self.max_retries)

    def delay_for(self, attempt: int) -> float:
        """Return the backoff delay after failed attempt number *attempt* (1-based)."""
        return self.base_delay * (2 ** (attempt - 1))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "request",
    ) -> T:
        """Await ``operation()`` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per
                attempt.
            description: Label used in log messages.

        Returns:
            The operation's result.

        Raises:
            Exception: The last failure, once it is non-recoverable or the
                attempts are exhausted.
        """
        for attempt in range(1, self.attempts + 1):
            try:
                return await operation()
            except Exception as exc:
                kind = classify_error(exc)
                if not kind.recoverable:
                    logger.error(
                        "%s failed with non-recoverable %s error: %s",
                        description,
                        kind.value,
                        exc,
                    )
                    raise
                if attempt >= self.attempts:
                    logger.error(
                        "%s failed after %d attempt(s): %s", description, attempt, exc
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s attempt %d/%d failed (%s: %s); retrying in %.2fs",
                    description,
                    attempt,
                    self.attempts,
                    kind.value,
                    exc,
                    delay,
                )
                await self._sleep(delay)

        # Unreachable, but keeps type checkers happy.
        raise RuntimeError("RetryPolicy.run exited unexpectedly")  # pragma: no cover


class RateLimiter:
    """Async client-side rate limiter using a sliding window.

    Enforces a maximum number of calls per minute. Callers ``await
    acquire()`` before making an LLM request; the method sleeps until
    the window allows another call.

    Attributes:
        calls_per_minute: Maximum calls allowed in any 60-second window.
    """

    def __init__(self, calls_per_minute: int) -> None:
        if calls_per_minute <= 0:
            raise ValueError("calls_per_minute must be a positive integer.")
        self.calls_per_minute = calls_per_minute
        self._window_seconds = 60.0
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self) -> None:
        cutoff = time.monotonic() - self._window_seconds
        while self._timestamps and self._timestamps[0] < cutoff:
            self._timestamps.popleft()

    async def acquire(self) -> None:
        """Wait until a call slot is available within the current window."""
        async with self._lock:
            self._prune()
            if len(self._timestamps) >= self.calls_per_minute:
                sleep_secs = self._timestamps[0] + self._window_seconds - time.monotonic()
                if sleep_secs > 0:
                    logger.debug(
                        "RateLimiter: at capacity (%d/%d), sleeping %.2fs",
                        len(self._timestamps),
                        self.calls_per_minute,
                        sleep_secs,
                    )
                    await asyncio.sleep(sleep_secs)
                self._prune()
            self._timestamps.append(time.monotonic())
