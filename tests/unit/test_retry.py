"""Tests for the retry executor.

Covers:
- Attempt counting (N retries → N+1 invocations) and RetryExhaustedError
- Predicate priority: per-call override → config predicate → kinds → default
- Backoff delays handed to the sleep
- Cancellation during a delay (task cancel and cancel_event)
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from order_resilience.core.errors import (
    CircuitOpenError,
    DependencyTimeoutError,
    DependencyUnavailableError,
    ErrorKind,
    RetryExhaustedError,
    TransientDatabaseError,
    ValidationFailedError,
)
from order_resilience.models.policies import RetryConfig, RetryStrategy
from order_resilience.resilience import retry as retry_module
from order_resilience.resilience.retry import RetryExecutor


def fast_config(**overrides) -> RetryConfig:
    values = {"max_attempts": 3, "initial_delay": 0.001, "max_delay": 0.01}
    values.update(overrides)
    return RetryConfig(**values)


class Script:
    """Operation raising the queued errors in order, then returning ``result``."""

    def __init__(self, *errors: BaseException, result: str = "done") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class AlwaysFails:
    def __init__(self, exc: BaseException) -> None:
        self.exc = exc
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        raise self.exc


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Attempt counting
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestAttempts:
    async def test_success_first_try(self):
        op = Script()
        assert await RetryExecutor("sql", fast_config()).execute(op) == "done"
        assert op.calls == 1

    async def test_recovers_after_transient_failures(self):
        op = Script(DependencyUnavailableError("sql"), TimeoutError("slow"))
        assert await RetryExecutor("sql", fast_config()).execute(op) == "done"
        assert op.calls == 3

    @pytest.mark.parametrize("max_attempts", [0, 1, 3, 5])
    async def test_always_failing_runs_n_plus_one_times(self, max_attempts):
        err = DependencyUnavailableError("rabbitmq", "connection reset")
        op = AlwaysFails(err)
        executor = RetryExecutor("rabbitmq", fast_config(max_attempts=max_attempts))
        with pytest.raises(RetryExhaustedError) as exc_info:
            await executor.execute(op)
        assert op.calls == max_attempts + 1
        assert exc_info.value.attempts == max_attempts + 1
        assert exc_info.value.last_error is err
        assert exc_info.value.__cause__ is err
        assert exc_info.value.name == "rabbitmq"

    async def test_sync_operation(self):
        calls = []

        def op():
            calls.append(1)
            if len(calls) < 2:
                raise ConnectionResetError("reset")
            return 7

        assert await RetryExecutor("sql", fast_config()).execute(op) == 7
        assert len(calls) == 2

    async def test_logs_success_after_retry(self, caplog):
        op = Script(DependencyUnavailableError("sql"))
        with caplog.at_level("INFO", logger="order_resilience.resilience.retry"):
            await RetryExecutor("sql", fast_config()).execute(op)
        assert "'sql' succeeded after 1 retry" in caplog.text
        assert "retrying in" in caplog.text


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Retry predicates
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDefaultClassifier:
    @pytest.mark.parametrize(
        "exc",
        [
            DependencyUnavailableError("geocoder"),
            DependencyTimeoutError("geocoder", 5.0),
            TransientDatabaseError("deadlock victim"),
            TimeoutError("timed out"),
            ConnectionRefusedError("refused"),
            httpx.ConnectError("refused"),
            httpx.ReadTimeout("read timed out"),
        ],
    )
    async def test_transient_errors_are_retried(self, exc):
        op = Script(exc)
        assert await RetryExecutor("geocoder", fast_config()).execute(op) == "done"
        assert op.calls == 2

    @pytest.mark.parametrize(
        "exc",
        [
            ValidationFailedError("bad address"),
            ValueError("bad"),
            RuntimeError("bug"),
            CircuitOpenError("geocoder", 10.0),
        ],
    )
    async def test_non_transient_errors_fail_immediately(self, exc):
        op = AlwaysFails(exc)
        with pytest.raises(RetryExhaustedError) as exc_info:
            await RetryExecutor("geocoder", fast_config()).execute(op)
        assert op.calls == 1
        assert exc_info.value.last_error is exc


class TestPredicatePriority:
    async def test_per_call_override_wins(self):
        seen = []

        def override(exc, attempt):
            seen.append(attempt)
            return attempt < 2

        op = AlwaysFails(ValidationFailedError("nope"))
        cfg = fast_config(should_retry=lambda exc: False)
        with pytest.raises(RetryExhaustedError):
            await RetryExecutor("sql", cfg).execute(op, override)
        assert op.calls == 2
        assert seen == [1, 2]

    async def test_async_override(self):
        override = AsyncMock(return_value=False)
        op = AlwaysFails(DependencyUnavailableError("sql"))
        with pytest.raises(RetryExhaustedError):
            await RetryExecutor("sql", fast_config()).execute(op, override)
        assert op.calls == 1
        override.assert_awaited_once()

    async def test_override_cannot_exceed_max_attempts(self):
        op = AlwaysFails(ValueError("x"))
        with pytest.raises(RetryExhaustedError):
            await RetryExecutor("sql", fast_config(max_attempts=2)).execute(
                op, lambda exc, attempt: True
            )
        assert op.calls == 3

    async def test_config_predicate_beats_kinds(self):
        cfg = fast_config(
            should_retry=lambda exc: isinstance(exc, KeyError),
            retryable_error_kinds={ErrorKind.TRANSIENT},
        )
        op = Script(KeyError("k"))
        assert await RetryExecutor("sql", cfg).execute(op) == "done"

        op = AlwaysFails(DependencyUnavailableError("sql"))
        with pytest.raises(RetryExhaustedError):
            await RetryExecutor("sql", cfg).execute(op)
        assert op.calls == 1

    async def test_retryable_kinds_restrict_default(self):
        cfg = fast_config(retryable_error_kinds={ErrorKind.TIMEOUT})
        op = Script(DependencyTimeoutError("geocoder", 1.0))
        assert await RetryExecutor("geocoder", cfg).execute(op) == "done"

        op = AlwaysFails(DependencyUnavailableError("geocoder"))
        with pytest.raises(RetryExhaustedError):
            await RetryExecutor("geocoder", cfg).execute(op)
        assert op.calls == 1

    async def test_retryable_kinds_can_include_validation(self):
        cfg = fast_config(retryable_error_kinds={ErrorKind.PERMANENT_VALIDATION})
        op = Script(ValidationFailedError("stale version"))
        assert await RetryExecutor("sql", cfg).execute(op) == "done"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Delays and cancellation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDelays:
    async def test_exponential_delays_between_attempts(self, monkeypatch):
        delays: list[float] = []

        async def fake_sleep(delay, cancel_event):
            delays.append(delay)

        monkeypatch.setattr(retry_module, "_cancellable_sleep", fake_sleep)
        cfg = RetryConfig(max_attempts=4, initial_delay=1.0, max_delay=5.0)
        with pytest.raises(RetryExhaustedError):
            await RetryExecutor("sql", cfg).execute(AlwaysFails(TimeoutError()))
        assert delays == [1.0, 2.0, 4.0, 5.0]

    async def test_fixed_delays(self, monkeypatch):
        delays: list[float] = []

        async def fake_sleep(delay, cancel_event):
            delays.append(delay)

        monkeypatch.setattr(retry_module, "_cancellable_sleep", fake_sleep)
        cfg = RetryConfig(max_attempts=3, initial_delay=0.25, strategy=RetryStrategy.FIXED)
        with pytest.raises(RetryExhaustedError):
            await RetryExecutor("sql", cfg).execute(AlwaysFails(TimeoutError()))
        assert delays == [0.25, 0.25, 0.25]


class TestCancellation:
    async def test_task_cancel_during_delay(self):
        op = AlwaysFails(DependencyUnavailableError("webhooks"))
        executor = RetryExecutor("webhooks", RetryConfig(max_attempts=5, initial_delay=30.0))
        task = asyncio.create_task(executor.execute(op))
        await asyncio.sleep(0.01)
        assert op.calls == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert op.calls == 1

    async def test_cancel_event_during_delay(self):
        op = AlwaysFails(DependencyUnavailableError("webhooks"))
        executor = RetryExecutor("webhooks", RetryConfig(max_attempts=5, initial_delay=30.0))
        cancel = asyncio.Event()
        task = asyncio.create_task(executor.execute(op, cancel_event=cancel))
        await asyncio.sleep(0.01)
        cancel.set()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert op.calls == 1

    async def test_cancel_event_already_set(self):
        op = Script()
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(asyncio.CancelledError):
            await RetryExecutor("sql", fast_config()).execute(op, cancel_event=cancel)
        assert op.calls == 0

    async def test_unset_cancel_event_waits_out_delay(self):
        op = Script(DependencyUnavailableError("sql"))
        cancel = asyncio.Event()
        result = await RetryExecutor("sql", fast_config()).execute(op, cancel_event=cancel)
        assert result == "done"
        assert op.calls == 2

    async def test_cancellation_inside_operation_is_not_wrapped(self):
        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await RetryExecutor("sql", fast_config()).execute(cancelled)
