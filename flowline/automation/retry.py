"""
Flowline Retry Policy

Backoff delays between retry attempts of a failing step.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from flowline.automation.types import (
    BackoffStrategy,
    OnError,
    RetryConfig,
    Step,
)


def next_delay(
    attempt: int,
    strategy: Union[BackoffStrategy, str],
    initial_delay: int,
    max_delay: int,
) -> int:
    """
    Delay in milliseconds before retry number ``attempt``.

    Attempt counting starts at 1 for the first retry.
    """
    if attempt < 1:
        raise ValueError(f"Retry attempt must be >= 1, got {attempt}")

    strategy = BackoffStrategy(strategy)
    if strategy == BackoffStrategy.FIXED:
        return initial_delay
    if strategy == BackoffStrategy.LINEAR:
        return min(initial_delay * attempt, max_delay)
    return min(initial_delay * 2 ** (attempt - 1), max_delay)


@dataclass(frozen=True)
class RetryPolicy:
    """Effective retry settings of one step."""
    max_retries: int = 0
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: int = 1000
    max_delay: int = 300000

    def delay_for(self, attempt: int) -> Optional[int]:
        """Delay before retry ``attempt``, or None when the step should give up."""
        if attempt > self.max_retries:
            return None
        return next_delay(attempt, self.strategy, self.initial_delay, self.max_delay)

    @classmethod
    def for_step(cls, step: Step, defaults: RetryConfig) -> "RetryPolicy":
        """
        Combine a step's error handling with the workflow retry defaults.

        Only steps whose policy is ``retry`` get retries. The step's own
        ``max_retries``/``retry_delay`` win over the workflow defaults.
        """
        handling = step.error_handling
        if handling.on_error != OnError.RETRY:
            return cls(max_retries=0)

        if handling.max_retries is not None:
            max_retries = handling.max_retries
        elif defaults.enabled:
            max_retries = defaults.max_attempts
        else:
            max_retries = 0

        return cls(
            max_retries=max(0, max_retries),
            strategy=defaults.backoff_strategy,
            initial_delay=handling.retry_delay if handling.retry_delay is not None else defaults.initial_delay,
            max_delay=defaults.max_delay,
        )
