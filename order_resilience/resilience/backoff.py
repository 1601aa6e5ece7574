"""Backoff calculator — delay before the next retry attempt.

Pure function of (attempt, config).  The only shared state is the
process-wide random source used by the JITTER strategy; ``SystemRandom``
draws from the OS and is safe to share across threads and tasks.
"""

from __future__ import annotations

import random

from order_resilience.models.policies import RetryConfig, RetryStrategy

# Jitter spread as a fraction of the initial delay
JITTER_FACTOR = 0.2

_jitter_random = random.SystemRandom()


def _exponential(base: float, config: RetryConfig, attempt: int) -> float:
    try:
        return base * config.backoff_multiplier ** (attempt - 1)
    except OverflowError:
        return config.max_delay


def compute_delay(attempt: int, config: RetryConfig, rng: random.Random | None = None) -> float:
    """Return the delay in seconds before retry number *attempt* (1-based).

    Args:
        attempt: Failed attempts so far (``1`` for the first retry).
        config:  Retry policy providing strategy, delays and multiplier.
        rng:     Random source for JITTER; defaults to the shared one.

    The result is clamped to ``config.max_delay`` for every strategy.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    base = config.initial_delay
    strategy = config.strategy

    if strategy == RetryStrategy.FIXED:
        delay = base
    elif strategy == RetryStrategy.LINEAR:
        delay = base * attempt
    elif strategy == RetryStrategy.EXPONENTIAL:
        delay = _exponential(base, config, attempt)
    elif strategy == RetryStrategy.JITTER:
        source = rng or _jitter_random
        delay = _exponential(base, config, attempt)
        delay += source.uniform(0, base * JITTER_FACTOR)
    else:
        delay = base

    return min(delay, config.max_delay)
