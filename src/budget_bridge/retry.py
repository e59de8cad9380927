"""Bounded retry with exponential backoff for external calls."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .errors import NetworkError, RateLimitError, RetryExhaustedError

T = TypeVar("T")

logger = logging.getLogger(__name__)

JITTER_MIN_MULTIPLIER = 0.5
JITTER_MAX_MULTIPLIER = 1.5


@dataclass
class RetryPolicy:
    """Retry configuration.

    Only ``retryable`` exceptions are retried; anything else propagates on the
    first failure. ``deadline`` caps the total time across all attempts.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True
    deadline: float | None = 120.0  # seconds, None = no overall cap
    retryable: tuple[type[Exception], ...] = (NetworkError,)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def delay_for(self, attempt: int, error: Exception | None = None) -> float:
        """Backoff before the retry following ``attempt`` (0-based)."""
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return min(max(error.retry_after, 0.0), self.max_delay)
        delay = min(self.initial_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            delay *= JITTER_MIN_MULTIPLIER + random.random() * (
                JITTER_MAX_MULTIPLIER - JITTER_MIN_MULTIPLIER
            )
        return delay

    def call(self, func: Callable[[], T], description: str = "call") -> T:
        """
        Run ``func`` until it succeeds, a non-retryable error is raised, or
        attempts/deadline are used up.

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error
        """
        started = self.clock()
        last_error: Exception | None = None

        for attempt in range(self.max_attempts):
            try:
                result = func()
                if attempt > 0:
                    logger.info("%s succeeded on attempt %d", description, attempt + 1)
                return result
            except self.retryable as e:
                last_error = e

                if attempt + 1 >= self.max_attempts:
                    break

                delay = self.delay_for(attempt, e)
                if self.deadline is not None and (
                    self.clock() - started + delay > self.deadline
                ):
                    logger.warning("%s: retry deadline of %.0fs reached", description, self.deadline)
                    raise RetryExhaustedError(attempt + 1, e) from e

                logger.warning(
                    "%s attempt %d/%d failed: %s. Retrying in %.2fs",
                    description,
                    attempt + 1,
                    self.max_attempts,
                    e,
                    delay,
                )
                self.sleep(delay)

        logger.error("%s: all %d attempts failed", description, self.max_attempts)
        raise RetryExhaustedError(self.max_attempts, last_error) from last_error


NO_RETRY = RetryPolicy(max_attempts=1, deadline=None)
