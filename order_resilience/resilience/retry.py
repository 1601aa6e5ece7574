"""Retry executor — bounded retries with backoff for transient failures.

Runs an operation up to ``max_attempts + 1`` times.  Between attempts it
consults the retry predicate, computes the delay with
:func:`~order_resilience.resilience.backoff.compute_delay`, and waits in a
way that an external cancellation aborts immediately.

The executor owns no state shared across calls; one instance per
dependency is safe to use from many concurrent tasks.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from order_resilience.core.errors import RetryExhaustedError, classify_error, is_transient
from order_resilience.models.policies import RetryConfig
from order_resilience.resilience.backoff import compute_delay
from order_resilience.resilience.circuit_breaker import Operation, invoke

logger = logging.getLogger(__name__)

# Per-call predicate: (error, attempt) -> bool, sync or async
ShouldRetry = Callable[[BaseException, int], "bool | Awaitable[bool]"]


class RetryExecutor:
    """Retry policy for a single dependency.

    Args:
        name:   Dependency name (for logging/errors).
        config: Retry policy; defaults to 3 retries, exponential from 1s.
    """

    def __init__(self, name: str, config: RetryConfig | None = None) -> None:
        self.name = name
        self.config = config or RetryConfig()

    async def execute(
        self,
        operation: Operation,
        should_retry: ShouldRetry | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> Any:
        """Run *operation*, retrying failures the policy deems retryable.

        Args:
            operation:    Zero-argument callable (sync or async).
            should_retry: Optional per-call predicate overriding the policy.
            cancel_event: Optional event; setting it aborts the retry loop.

        Raises:
            RetryExhaustedError: The operation failed and will not be retried,
                either because it is not retryable or retries ran out.  The
                last error is chained as ``__cause__``.
            asyncio.CancelledError: Cancelled during an attempt or a delay.
        """
        attempt = 0
        while True:
            _raise_if_cancelled(cancel_event)
            try:
                result = await invoke(operation)
            except Exception as exc:
                attempt += 1
                retry = await self._should_retry(exc, attempt, should_retry)

                if not retry or attempt > self.config.max_attempts:
                    logger.warning(
                        "'%s' failed after %d attempt(s) (%s: %s) — not retrying",
                        self.name,
                        attempt,
                        type(exc).__name__,
                        exc,
                    )
                    raise RetryExhaustedError(self.name, attempt, exc) from exc

                delay = compute_delay(attempt, self.config)
                logger.warning(
                    "'%s' failed (%s: %s) (attempt %d/%d), retrying in %.2fs",
                    self.name,
                    type(exc).__name__,
                    exc,
                    attempt,
                    self.config.max_attempts,
                    delay,
                )
                await _cancellable_sleep(delay, cancel_event)
                continue

            if attempt > 0:
                logger.info("'%s' succeeded after %d retry(ies)", self.name, attempt)
            return result

    async def _should_retry(
        self,
        exc: Exception,
        attempt: int,
        override: ShouldRetry | None,
    ) -> bool:
        """Apply the retry predicates in priority order."""
        if override is not None:
            decision = override(exc, attempt)
            if inspect.isawaitable(decision):
                decision = await decision
            return bool(decision)

        if self.config.should_retry is not None:
            return bool(self.config.should_retry(exc))

        if self.config.retryable_error_kinds:
            return classify_error(exc) in self.config.retryable_error_kinds

        return is_transient(exc)


def _raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise asyncio.CancelledError("retry cancelled")


async def _cancellable_sleep(delay: float, cancel_event: asyncio.Event | None) -> None:
    """Sleep for *delay* seconds unless cancelled first.

    Task cancellation interrupts ``asyncio.sleep`` directly.  When
    *cancel_event* is given, setting it ends the wait early with
    ``asyncio.CancelledError``.
    """
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except TimeoutError:
        return
    raise asyncio.CancelledError("retry cancelled during backoff delay")
