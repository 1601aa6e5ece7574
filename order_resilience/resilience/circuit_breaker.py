"""Async circuit breaker — per-dependency fault isolation.

Implements the standard three-state circuit breaker:

    CLOSED    →  (failure_threshold consecutive failures)  →  OPEN
    OPEN      →  (open_timeout elapsed, next call)          →  HALF_OPEN
    HALF_OPEN →  (success_threshold trial successes)        →  CLOSED
    HALF_OPEN →  (any trial failure)                        →  OPEN

Each dependency ("sql", "geocoder", "rabbitmq", ...) gets its own
``CircuitBreaker`` via ``ResilienceRegistry`` so that every call site
using that name shares one failure count.

The lock guards bookkeeping only.  The wrapped operation runs outside
it, and plain synchronous operations run in a worker thread, so a slow
call never blocks other callers from being admitted or rejected.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from order_resilience.core.errors import CircuitOpenError
from order_resilience.models.policies import CircuitBreakerConfig
from order_resilience.models.stats import CircuitBreakerStats, CircuitState

logger = logging.getLogger(__name__)

# Zero-argument callable returning a value or an awaitable of one
Operation = Callable[[], Any]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def is_async_operation(operation: Callable[[], Any]) -> bool:
    """True for coroutine functions, partials of them and async ``__call__``."""
    return inspect.iscoroutinefunction(operation) or inspect.iscoroutinefunction(
        getattr(operation, "__call__", None)
    )


async def invoke(operation: Callable[[], Any]) -> Any:
    """Run *operation* without blocking the event loop.

    Coroutine functions are awaited directly.  Plain callables run in a
    worker thread via ``asyncio.to_thread``; if one returns an awaitable
    (``lambda: client.get(url)``) it is awaited back on the loop.
    """
    if is_async_operation(operation):
        return await operation()
    result = await asyncio.to_thread(operation)
    if inspect.isawaitable(result):
        result = await result
    return result


class CircuitBreaker:
    """Async-safe circuit breaker for a single dependency.

    Args:
        name:   Dependency name (for logging/errors).
        config: Thresholds; defaults to 5 failures / 60s / 2 successes.
        clock:  Returns the current aware ``datetime``.  Injected by tests.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = asyncio.Lock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at: datetime | None = None
        self._last_success_at: datetime | None = None
        self._opened_at: datetime | None = None

        # HALF_OPEN trial accounting; the generation changes on every
        # entry into HALF_OPEN so stale trials never release a new slot.
        self._half_open_in_flight = 0
        self._half_open_generation = 0

        # Metrics
        self._total_calls = 0
        self._total_successes = 0
        self._total_failures = 0
        self._total_rejections = 0

        logger.info(
            "Circuit breaker '%s' created (failure_threshold=%d, open_timeout=%.1fs, "
            "success_threshold=%d)",
            name,
            self._config.failure_threshold,
            self._config.open_timeout,
            self._config.success_threshold,
        )

    # ── Public properties ────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    # ── Core call wrapper ────────────────────────────────────────────

    async def execute(self, operation: Operation) -> Any:
        """Run *operation* under breaker protection.

        Raises:
            CircuitOpenError: The circuit is open; *operation* was not called.
            Exception: Whatever *operation* raised, unchanged, after it has
                been recorded as a failure.
        """
        trial = await self._admit()
        try:
            result = await invoke(operation)
        except Exception as exc:
            await self._record_failure(exc, trial)
            raise
        except asyncio.CancelledError:
            # Neither success nor failure; free the trial slot.
            await self._release_trial(trial)
            raise
        await self._record_success(trial)
        return result

    async def reset(self) -> None:
        """Force the breaker to CLOSED and zero every counter and timestamp."""
        async with self._lock:
            previous = self._state
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_at = None
            self._last_success_at = None
            self._opened_at = None
            self._half_open_in_flight = 0
            self._half_open_generation += 1
            self._total_calls = 0
            self._total_successes = 0
            self._total_failures = 0
            self._total_rejections = 0
        logger.info("Circuit breaker '%s' reset manually (was %s)", self._name, previous.value)

    async def get_stats(self) -> CircuitBreakerStats:
        """Return a consistent snapshot of the breaker's counters."""
        async with self._lock:
            return CircuitBreakerStats(
                name=self._name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                last_failure_at=self._last_failure_at,
                last_success_at=self._last_success_at,
                opened_at=self._opened_at,
                total_calls=self._total_calls,
                total_successes=self._total_successes,
                total_failures=self._total_failures,
                total_rejections=self._total_rejections,
                captured_at=self._clock(),
            )

    # ── State machine (all callers hold the lock) ────────────────────

    async def _admit(self) -> int | None:
        """Admit or reject a call.

        Returns the HALF_OPEN generation when the call is a trial, else ``None``.
        """
        async with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = (self._clock() - self._opened_at).total_seconds()
                if elapsed < self._config.open_timeout:
                    self._total_rejections += 1
                    retry_after = self._config.open_timeout - elapsed
                    logger.warning(
                        "Circuit breaker '%s' is open — rejecting call (retry after %.1fs)",
                        self._name,
                        retry_after,
                    )
                    raise CircuitOpenError(self._name, retry_after)
                self._enter_half_open()

            if self._state == CircuitState.HALF_OPEN:
                limit = self._config.half_open_max_calls
                if limit is not None and self._half_open_in_flight >= limit:
                    self._total_rejections += 1
                    logger.warning(
                        "Circuit breaker '%s' is half-open with %d trial(s) in flight — "
                        "rejecting call",
                        self._name,
                        self._half_open_in_flight,
                    )
                    raise CircuitOpenError(self._name, 0.0)
                self._half_open_in_flight += 1
                self._total_calls += 1
                return self._half_open_generation

            self._total_calls += 1
            return None

    async def _record_success(self, trial: int | None) -> None:
        async with self._lock:
            self._release_trial_locked(trial)
            self._success_count += 1
            self._total_successes += 1
            self._last_success_at = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                if self._success_count >= self._config.success_threshold:
                    self._transition(CircuitState.CLOSED)
                    self._failure_count = 0
                    self._success_count = 0
                    self._opened_at = None
            elif self._state == CircuitState.CLOSED:
                # A single success wipes accumulated failures
                self._failure_count = 0

    async def _record_failure(self, exc: Exception, trial: int | None) -> None:
        async with self._lock:
            self._release_trial_locked(trial)
            now = self._clock()
            self._failure_count += 1
            self._total_failures += 1
            self._last_failure_at = now

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    "Circuit breaker '%s' trial call failed (%s: %s) — reopening",
                    self._name,
                    type(exc).__name__,
                    exc,
                )
                self._transition(CircuitState.OPEN)
                self._opened_at = now
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self._config.failure_threshold
            ):
                logger.warning(
                    "Circuit breaker '%s' opened after %d consecutive failures (last: %s: %s)",
                    self._name,
                    self._failure_count,
                    type(exc).__name__,
                    exc,
                )
                self._transition(CircuitState.OPEN)
                self._opened_at = now

    async def _release_trial(self, trial: int | None) -> None:
        if trial is None:
            return
        async with self._lock:
            self._release_trial_locked(trial)

    def _release_trial_locked(self, trial: int | None) -> None:
        if trial is not None and trial == self._half_open_generation and self._half_open_in_flight:
            self._half_open_in_flight -= 1

    def _enter_half_open(self) -> None:
        self._transition(CircuitState.HALF_OPEN)
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        self._half_open_in_flight = 0
        self._half_open_generation += 1

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        logger.info(
            "Circuit breaker '%s': %s -> %s",
            self._name,
            self._state.value,
            new_state.value,
        )
        self._state = new_state
