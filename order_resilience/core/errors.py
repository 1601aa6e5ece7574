"""Resilience error taxonomy.

Custom exception hierarchy for the resilience layer, the ``ErrorKind``
enumeration used by retry classification, and boundary errors that
collaborators raise so the retry predicate is a plain kind comparison.

Errors raised by a wrapped operation are never wrapped by the circuit
breaker: callers see the original exception.  Only the retry executor
wraps, and only once it gives up (``RetryExhaustedError``, with the last
error chained as ``__cause__``).  Cancellation is ``asyncio.CancelledError``
and is always propagated verbatim.
"""

from __future__ import annotations

import enum

import httpx
from pydantic import BaseModel


class ErrorKind(str, enum.Enum):
    """Classification attached to errors at the dependency boundary."""

    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    DATABASE_TRANSIENT = "database_transient"
    PERMANENT_VALIDATION = "permanent_validation"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


#: Kinds retried by the default classifier.
TRANSIENT_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.TRANSIENT, ErrorKind.TIMEOUT, ErrorKind.DATABASE_TRANSIENT}
)


class ResilienceError(Exception):
    """Base exception for all resilience-layer errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class CircuitOpenError(ResilienceError):
    """Raised when a call is rejected because the circuit is open.

    The wrapped operation was never invoked.

    Attributes:
        name:        Dependency name of the breaker.
        retry_after: Seconds until the breaker admits a trial call.
    """

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, name: str, retry_after: float) -> None:
        self.name = name
        self.retry_after = max(0.0, retry_after)
        super().__init__(f"Circuit open for '{name}' — retry after {self.retry_after:.1f}s")


class RetryExhaustedError(ResilienceError):
    """Raised when the retry executor gives up.

    Attributes:
        name:       Dependency name of the retry policy.
        attempts:   Number of failed invocations observed.
        last_error: The final error raised by the operation.
    """

    def __init__(self, name: str, attempts: int, last_error: BaseException) -> None:
        self.name = name
        self.attempts = attempts
        self.last_error = last_error
        self.kind = classify_error(last_error)
        super().__init__(
            f"'{name}' failed after {attempts} attempt(s): "
            f"{type(last_error).__name__}: {last_error}"
        )


# ── Boundary errors ─────────────────────────────────────────────────────


class DependencyUnavailableError(ResilienceError):
    """A dependency could not be reached (connection refused, reset, 5xx)."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, dependency: str, detail: str = "") -> None:
        self.dependency = dependency
        self.detail = detail
        msg = f"Dependency unavailable: {dependency}"
        if detail:
            msg += f" — {detail}"
        super().__init__(msg)


class DependencyTimeoutError(ResilienceError):
    """A dependency call exceeded its timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, dependency: str, timeout_seconds: float) -> None:
        self.dependency = dependency
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Dependency '{dependency}' timed out after {timeout_seconds}s")


class TransientDatabaseError(ResilienceError):
    """A database error expected to clear on retry (deadlock, failover)."""

    kind = ErrorKind.DATABASE_TRANSIENT

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Transient database error — {detail}")


class ValidationFailedError(ResilienceError):
    """A request was rejected as invalid; retrying cannot help."""

    kind = ErrorKind.PERMANENT_VALIDATION

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Validation failed — {detail}")


def classify_error(exc: BaseException) -> ErrorKind:
    """Return the ``ErrorKind`` of *exc*.

    An explicit ``kind`` attribute wins.  Otherwise common timeout and
    network exceptions (builtin and httpx) are mapped to TIMEOUT and
    TRANSIENT, argument errors to PERMANENT_VALIDATION, anything else
    to UNKNOWN.
    """
    kind = getattr(exc, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind
    # Order matters: httpx timeouts are also TransportErrors.
    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (ConnectionError, httpx.TransportError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (ValueError, TypeError)):
        return ErrorKind.PERMANENT_VALIDATION
    return ErrorKind.UNKNOWN


def is_transient(exc: BaseException) -> bool:
    """Default retry classifier: retry transient, timeout and DB-transient kinds."""
    return classify_error(exc) in TRANSIENT_KINDS


class StructuredErrorResponse(BaseModel):
    """Client-facing error body for collaborators surfacing resilience errors.

    Returns ``{"error": str, "code": str, "request_id": str}`` — no stack traces.
    """

    error: str
    code: str
    request_id: str

    @classmethod
    def from_exception(cls, exc: Exception, request_id: str) -> "StructuredErrorResponse":
        """Create from an exception, mapping to machine-readable codes.

        Never leaks internal details for unhandled exceptions.
        """
        if isinstance(exc, CircuitOpenError):
            return cls(error=str(exc), code="CIRCUIT_OPEN", request_id=request_id)
        if isinstance(exc, RetryExhaustedError):
            return cls(error=str(exc), code="RETRY_EXHAUSTED", request_id=request_id)
        if isinstance(exc, DependencyUnavailableError):
            return cls(error=str(exc), code="DEPENDENCY_UNAVAILABLE", request_id=request_id)
        if isinstance(exc, DependencyTimeoutError):
            return cls(error=str(exc), code="DEPENDENCY_TIMEOUT", request_id=request_id)
        if isinstance(exc, ValidationFailedError):
            return cls(error=str(exc), code="VALIDATION_FAILED", request_id=request_id)
        if isinstance(exc, ResilienceError):
            return cls(error=str(exc), code="RESILIENCE_ERROR", request_id=request_id)
        # Unhandled: never expose internal details
        return cls(
            error="An internal error occurred",
            code="INTERNAL_ERROR",
            request_id=request_id,
        )
