"""
Retry policies and backoff strategies for FormRelay deliveries.

Provides:
- BackoffStrategy: Delay calculation between retries
- RetryPolicy: How many attempts a delivery gets and how long to wait

The delivery transport consults the policy between attempts; the
classification of an individual failure (retryable or terminal) is
made by the transport, not the policy.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field


# =============================================================================
# Backoff Strategies
# =============================================================================


class BackoffStrategy(ABC):
    """
    Abstract base for backoff delay calculation.

    Backoff strategies determine how long to wait between retry attempts.
    """

    @abstractmethod
    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay before the next attempt.

        Args:
            attempt: Number of the attempt that just failed (1-indexed)

        Returns:
            Delay in seconds before next attempt
        """
        ...


@dataclass
class NoBackoff(BackoffStrategy):
    """
    No delay between retries.

    Use for:
    - Testing
    - Operations that should fail fast
    """

    def get_delay(self, attempt: int) -> float:
        return 0.0


@dataclass
class ConstantBackoff(BackoffStrategy):
    """Fixed delay between retries."""

    delay: float = 1.0

    def get_delay(self, attempt: int) -> float:
        return self.delay


@dataclass
class ExponentialBackoff(BackoffStrategy):
    """
    Exponentially increasing delay between retries.

    delay = base * (multiplier ^ (attempt - 1))

    With optional jitter to prevent thundering herd.

    Example:
        backoff = ExponentialBackoff(base=2.0, multiplier=2.0, max_delay=60.0)
        # After attempt 1: 2s, after attempt 2: 4s, after attempt 3: 8s, ...
    """

    base: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: bool = False
    jitter_factor: float = 0.25  # +/- 25%

    def get_delay(self, attempt: int) -> float:
        delay = self.base * (self.multiplier ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_range = delay * self.jitter_factor
            delay += random.uniform(-jitter_range, jitter_range)
            delay = max(0, delay)

        return delay


# =============================================================================
# Retry Policy
# =============================================================================


@dataclass
class RetryPolicy:
    """
    Configures retry behaviour for one delivery.

    Example:
        policy = RetryPolicy(
            max_attempts=3,
            backoff=ExponentialBackoff(base=2.0),
        )
    """

    max_attempts: int = 3
    backoff: BackoffStrategy = field(default_factory=ExponentialBackoff)
    max_delay: float = 60.0  # Upper bound for Retry-After hints as well

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def should_retry(self, attempt: int, retryable: bool) -> bool:
        """
        Determine if another attempt should be made.

        Args:
            attempt: Number of the attempt that just failed (1-indexed)
            retryable: Classification of that failure
        """
        return retryable and attempt < self.max_attempts

    def get_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """
        Get delay before the next attempt.

        A server-supplied Retry-After (429) wins over the backoff when it
        is longer, capped at max_delay.
        """
        delay = self.backoff.get_delay(attempt)
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        return min(delay, self.max_delay)

    def with_attempts(self, max_attempts: int) -> RetryPolicy:
        """Return a copy allowing a different number of attempts."""
        return RetryPolicy(
            max_attempts=max_attempts,
            backoff=self.backoff,
            max_delay=self.max_delay,
        )


NO_RETRY = RetryPolicy(max_attempts=1, backoff=NoBackoff())

DEFAULT_DELIVERY_POLICY = RetryPolicy(
    max_attempts=3,
    backoff=ExponentialBackoff(base=2.0, multiplier=2.0, max_delay=60.0, jitter=True),
)
