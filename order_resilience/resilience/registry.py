"""ResilienceRegistry — one breaker and one retry executor per dependency.

Entries are created lazily on first request and kept for the registry's
lifetime so that every call site using a dependency name shares the same
failure count.  Creation is an atomic get-or-insert: a ``threading.Lock``
guards the map, so concurrent first access from tasks or threads never
builds two breakers for one name.

Usage::

    registry = ResilienceRegistry(Settings())
    breaker, retry = registry.get_or_create("geocoder")
    coords = await retry.execute(functools.partial(breaker.execute, lookup))

    # or, equivalently
    coords = await registry.execute("geocoder", lookup)
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from typing import Any

from order_resilience.core.config import Settings
from order_resilience.models.stats import CircuitBreakerStats
from order_resilience.resilience.circuit_breaker import CircuitBreaker, Clock, Operation, utc_now
from order_resilience.resilience.retry import RetryExecutor, ShouldRetry

logger = logging.getLogger(__name__)

Entry = tuple[CircuitBreaker, RetryExecutor]


class ResilienceRegistry:
    """Manages per-dependency ``CircuitBreaker`` / ``RetryExecutor`` pairs.

    Args:
        settings: Configuration sections; read when an entry is created.
        clock:    Clock handed to every breaker.  Injected by tests.
    """

    def __init__(self, settings: Settings | None = None, clock: Clock = utc_now) -> None:
        self._settings = settings if settings is not None else Settings()
        self._clock = clock
        self._entries: dict[str, Entry] = {}
        self._lock = threading.Lock()

    def get_or_create(self, name: str) -> Entry:
        """Return (or create) the breaker and retry executor for *name*."""
        entry = self._entries.get(name)
        if entry is not None:
            return entry
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                entry = (
                    CircuitBreaker(
                        name,
                        self._settings.circuit_breaker_config(name),
                        clock=self._clock,
                    ),
                    RetryExecutor(name, self._settings.retry_config(name)),
                )
                self._entries[name] = entry
                logger.info("Registered resilience policies for '%s'", name)
            return entry

    def get_breaker(self, name: str) -> CircuitBreaker:
        return self.get_or_create(name)[0]

    def get_retry(self, name: str) -> RetryExecutor:
        return self.get_or_create(name)[1]

    def get_all(self) -> dict[str, Entry]:
        """Return a copy of every registered entry."""
        with self._lock:
            return dict(self._entries)

    async def execute(
        self,
        name: str,
        operation: Operation,
        should_retry: ShouldRetry | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> Any:
        """Run *operation* through the retry executor wrapping the breaker."""
        breaker, retry = self.get_or_create(name)
        return await retry.execute(
            functools.partial(breaker.execute, operation),
            should_retry,
            cancel_event=cancel_event,
        )

    async def reset(self, name: str) -> None:
        """Reset the breaker for *name* to CLOSED.

        Raises ``KeyError`` if *name* was never registered.
        """
        with self._lock:
            entry = self._entries.get(name)
        if entry is None:
            raise KeyError(f"No circuit breaker registered for '{name}'")
        await entry[0].reset()

    async def reset_all(self) -> None:
        """Reset every circuit breaker to CLOSED."""
        for breaker, _ in self.get_all().values():
            await breaker.reset()

    async def all_stats(self) -> dict[str, CircuitBreakerStats]:
        """Return stats snapshots for every registered breaker."""
        return {name: await breaker.get_stats() for name, (breaker, _) in self.get_all().items()}
