"""Retry and backoff policy for queued mutations.

A transient delivery failure on attempt n (1-based) puts the item back to
pending, deferred until the drain that failed it finished plus delay(n). The
item is never retried within the same drain. Once attempt_count reaches
max_attempts the next transient failure is final.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict


class BackoffStrategy(str, Enum):
    """How the delay grows between attempts."""
    NONE = "none"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


def should_retry(attempt_count: int, max_attempts: int) -> bool:
    """Check whether an item that failed on attempt_count may be tried again.

    Args:
        attempt_count: Attempts made so far, including the failed one
        max_attempts: Attempt budget per item

    Returns:
        True if another attempt is allowed
    """
    return int(attempt_count) < int(max_attempts)


def compute_backoff_delay_seconds(
    strategy: str,
    attempt_count: int,
    base_seconds: float,
    max_seconds: float
) -> float:
    """Compute the delay before the next attempt.

    Exponential backoff doubles per attempt: base, 2*base, 4*base, ...
    Every strategy is capped at max_seconds.

    Args:
        strategy: 'none', 'fixed' or 'exponential'
        attempt_count: Attempt that just failed (>= 1)
        base_seconds: Delay after the first failure
        max_seconds: Upper bound on any delay

    Returns:
        Delay in seconds

    Raises:
        ValueError: On an unknown strategy, attempt_count < 1 or negative base
    """
    strategy = BackoffStrategy(strategy)
    if attempt_count < 1:
        raise ValueError(f"attempt_count must be >= 1, got {attempt_count}")
    if base_seconds < 0:
        raise ValueError(f"base_seconds must be >= 0, got {base_seconds}")

    if strategy is BackoffStrategy.NONE:
        return 0.0
    if strategy is BackoffStrategy.FIXED:
        return float(min(base_seconds, max_seconds))
    return float(min(base_seconds * (2 ** (attempt_count - 1)), max_seconds))


@dataclass(frozen=True)
class RetryPolicy:
    """Retry/backoff settings for queue items.

    Attributes:
        max_attempts: Attempt budget per item (>= 1)
        backoff_strategy: 'none', 'fixed' or 'exponential'
        backoff_base_seconds: Delay after the first failure
        max_backoff_seconds: Upper bound on any delay
    """
    max_attempts: int = 5
    backoff_strategy: str = BackoffStrategy.EXPONENTIAL.value
    backoff_base_seconds: float = 30.0
    max_backoff_seconds: float = 3600.0

    def __post_init__(self):
        """Validate settings."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        try:
            BackoffStrategy(self.backoff_strategy)
        except ValueError:
            raise ValueError(
                f"backoff_strategy must be one of "
                f"{[s.value for s in BackoffStrategy]}, got {self.backoff_strategy!r}"
            )
        if self.backoff_base_seconds < 0 or self.max_backoff_seconds < 0:
            raise ValueError("Backoff delays must be >= 0")

    @classmethod
    def from_config(cls, config: Dict[str, Dict[str, Any]]) -> 'RetryPolicy':
        """Create RetryPolicy from the 'sync' config section.

        Args:
            config: Full configuration dictionary

        Returns:
            RetryPolicy
        """
        sync = config['sync']
        return cls(
            max_attempts=int(sync['max_attempts']),
            backoff_strategy=str(sync['backoff_strategy']),
            backoff_base_seconds=float(sync['backoff_base_seconds']),
            max_backoff_seconds=float(sync['max_backoff_seconds']),
        )

    def should_retry(self, attempt_count: int) -> bool:
        """Check whether another attempt is allowed after attempt_count."""
        return should_retry(attempt_count, self.max_attempts)

    def retry_at(self, finished_at: datetime, attempt_count: int) -> datetime:
        """Compute when an item that failed on attempt_count becomes due again.

        Args:
            finished_at: End of the failed attempt (naive UTC)
            attempt_count: Attempt that failed

        Returns:
            Earliest time of the next attempt
        """
        delay = compute_backoff_delay_seconds(
            self.backoff_strategy,
            attempt_count,
            self.backoff_base_seconds,
            self.max_backoff_seconds
        )
        return finished_at + timedelta(seconds=delay)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, {self.backoff_strategy} "
            f"base={self.backoff_base_seconds}s cap={self.max_backoff_seconds}s)"
        )
