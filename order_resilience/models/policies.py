"""Breaker and retry-policy configuration objects.

Both are immutable and bound once, when the breaker or retry executor
is created.  Durations are in seconds.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass

from order_resilience.core.errors import ErrorKind


class RetryStrategy(str, enum.Enum):
    """Delay schedules between retry attempts."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    JITTER = "jitter"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for one circuit breaker.

    Attributes:
        failure_threshold:   Consecutive failures in CLOSED before opening.
        open_timeout:        Seconds spent OPEN before a trial call is admitted.
        success_threshold:   Consecutive trial successes in HALF_OPEN before closing.
        half_open_max_calls: Concurrent trial calls admitted in HALF_OPEN
                             (``None`` = unbounded).
    """

    failure_threshold: int = 5
    open_timeout: float = 60.0
    success_threshold: int = 2
    half_open_max_calls: int | None = None

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.open_timeout < 0:
            raise ValueError("open_timeout must be >= 0")
        if self.half_open_max_calls is not None and self.half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be >= 1 or None")


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy for one dependency.

    ``max_attempts`` counts retries *after* the first try, so an operation
    that always fails is invoked ``max_attempts + 1`` times.

    ``retryable_error_kinds`` and ``should_retry`` override the default
    transient-error classifier (``should_retry`` wins when both are set).
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    retryable_error_kinds: frozenset[ErrorKind] = frozenset()
    should_retry: Callable[[BaseException], bool] | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("backoff_multiplier must be > 0")
        # Accept any iterable of kinds; store it frozen.
        object.__setattr__(self, "retryable_error_kinds", frozenset(self.retryable_error_kinds))
