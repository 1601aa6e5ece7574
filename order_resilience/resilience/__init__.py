"""Resilience patterns — circuit breaker and retry for outbound dependencies.

Provides per-dependency circuit breakers and backoff retry so database
calls, webhook posts, geocoding and queue publishes fail fast while a
dependency is known to be down and recover on their own once it is back.
"""

from order_resilience.resilience.backoff import compute_delay
from order_resilience.resilience.circuit_breaker import CircuitBreaker
from order_resilience.resilience.registry import ResilienceRegistry
from order_resilience.resilience.retry import RetryExecutor

__all__ = [
    "CircuitBreaker",
    "ResilienceRegistry",
    "RetryExecutor",
    "compute_delay",
]
