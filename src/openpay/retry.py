"""
Retry policies and the generic helpers that apply them.

Settlement polling, idempotent completion calls and scheduled-payment
retries all take a RetryPolicy value instead of inlining their own loops.

Usage:
    policy = RetryPolicy.linear(10, start=0.8, step=0.3)
    payment, settled = poll_until(fetch, lambda p: p.completed, policy, clock)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Type, TypeVar

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts to make and how long to wait before each one.

    Attributes:
        max_attempts: Total attempts, including the first
        backoff: Maps a 0-based attempt number to a delay in seconds
        retryable: Exception types that trigger another attempt
    """

    max_attempts: int
    backoff: Callable[[int], float]
    retryable: tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay(self, attempt: int) -> float:
        return max(0.0, float(self.backoff(attempt)))

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        return attempt + 1 < self.max_attempts and isinstance(exc, self.retryable)

    @classmethod
    def fixed(
        cls,
        max_attempts: int,
        delay: float,
        retryable: tuple[Type[BaseException], ...] = (Exception,),
    ) -> "RetryPolicy":
        return cls(max_attempts, lambda _attempt: delay, retryable)

    @classmethod
    def linear(
        cls,
        max_attempts: int,
        start: float,
        step: float,
        retryable: tuple[Type[BaseException], ...] = (Exception,),
    ) -> "RetryPolicy":
        return cls(max_attempts, lambda attempt: start + step * attempt, retryable)


def poll_until(
    fetch: Callable[[], T],
    predicate: Callable[[T], bool],
    policy: RetryPolicy,
    clock: Optional[Clock] = None,
) -> tuple[Optional[T], bool]:
    """Sleep, fetch and test up to max_attempts times.

    Returns the last fetched value and whether the predicate was satisfied.
    Exceptions from fetch propagate.
    """
    clock = clock or SystemClock()
    last: Optional[T] = None
    for attempt in range(policy.max_attempts):
        clock.sleep(policy.delay(attempt))
        last = fetch()
        if predicate(last):
            return last, True
    return last, False


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    clock: Optional[Clock] = None,
    label: str = "call",
) -> T:
    """Call fn, retrying retryable failures; the final failure propagates."""
    clock = clock or SystemClock()
    attempt = 0
    while True:
        try:
            return fn()
        except policy.retryable as e:
            if not policy.should_retry(e, attempt):
                raise
            delay = policy.delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                label, attempt + 1, policy.max_attempts, delay, e,
            )
            clock.sleep(delay)
            attempt += 1
