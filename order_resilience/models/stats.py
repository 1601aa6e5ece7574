"""Read-only circuit breaker snapshot for observability consumers."""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import BaseModel, ConfigDict, computed_field


class CircuitState(str, enum.Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerStats(BaseModel):
    """Point-in-time copy of a breaker's counters.

    Taken under the breaker's lock, so fields are mutually consistent
    (e.g. ``opened_at`` is set exactly when ``state`` is OPEN).
    """

    model_config = ConfigDict(frozen=True)

    name: str
    state: CircuitState
    failure_count: int = 0
    success_count: int = 0
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    opened_at: datetime | None = None
    total_calls: int = 0
    total_successes: int = 0
    total_failures: int = 0
    total_rejections: int = 0
    captured_at: datetime

    @computed_field
    @property
    def total_requests(self) -> int:
        return self.success_count + self.failure_count

    @computed_field
    @property
    def seconds_since_opened(self) -> float | None:
        if self.opened_at is None:
            return None
        return max(0.0, (self.captured_at - self.opened_at).total_seconds())
