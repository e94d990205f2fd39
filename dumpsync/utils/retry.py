"""
Retry helper with exponential backoff for transient pipeline stages.

One abstraction for listing, download and extraction: the caller passes the
operation, a RetryPolicy and callbacks; only errors flagged retryable are
retried.
"""
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, TypeVar

from dumpsync.core.errors import StageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt bound and backoff schedule."""

    max_attempts: int = 2
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = False

    def delay_for(self, attempt: int) -> float:
        """
        Delay before the attempt following `attempt` (1-indexed).

        base_delay * exponential_base ^ (attempt - 1), capped at max_delay,
        plus up to 25% jitter when enabled.
        """
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)
        if self.jitter and delay > 0:
            delay += delay * random.uniform(0, 0.25)
        return delay


@dataclass
class RetryStats:
    """Tracks attempts for a single retried operation."""

    attempts: int = 0
    total_delay_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)
    success: bool = False

    def record_failure(self, error: Exception, delay: float = 0.0) -> None:
        self.attempts += 1
        self.total_delay_seconds += delay
        self.errors.append(f"{type(error).__name__}: {error}")


def is_retryable(error: Exception) -> bool:
    """Only stage errors that declare themselves retryable are retried."""
    return isinstance(error, StageError) and error.retryable


def run_with_retries(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    description: str = "operation",
    on_failure: Optional[Callable[[int, Exception, Optional[float]], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    stats: Optional[RetryStats] = None,
) -> T:
    """
    Run `operation` until it succeeds or the attempt bound is reached.

    Args:
        operation: Zero-argument callable.
        policy: Attempt bound and backoff.
        description: Used in log lines.
        on_failure: Called after every failed attempt with
            (attempt, error, delay); delay is None when no further attempt
            follows.
        sleep: Injected for tests.
        stats: Optional collector.

    Returns:
        The operation's result.

    Raises:
        The last error once attempts are exhausted, or immediately for a
        non-retryable error.
    """
    stats = stats if stats is not None else RetryStats()
    attempt = 0
    while True:
        attempt += 1
        try:
            result = operation()
        except Exception as e:
            give_up = attempt >= policy.max_attempts or not is_retryable(e)
            delay = None if give_up else policy.delay_for(attempt)
            stats.record_failure(e, delay or 0.0)
            if on_failure:
                on_failure(attempt, e, delay)
            if give_up:
                logger.error("%s failed after %d attempt(s): %s", description, attempt, e)
                raise
            logger.warning(
                "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
                description, attempt, policy.max_attempts, e, delay,
            )
            if delay:
                sleep(delay)
            continue

        stats.success = True
        if attempt > 1:
            logger.info(
                "%s succeeded on attempt %d after %.1fs total delay",
                description, attempt, stats.total_delay_seconds,
            )
        return result
