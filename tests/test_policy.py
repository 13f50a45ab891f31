"""Unit tests for retry and circuit-breaker policy

Tests cover:
- Linear and exponential backoff delays
- Breaker transitions (closed -> open -> half_open -> closed/open)
- Retry timing and attempt counting
- Per-attempt timeouts, non-retryable errors and cancellation
"""

import asyncio
import time

import pytest

from flowengine.engine.cancellation import CancellationToken
from flowengine.engine.policy import CircuitBreaker, CircuitBreakerRegistry, RetryPolicy, execute_with_policy
from flowengine.errors import (
    CircuitOpen,
    ConditionNotMet,
    RunCancelled,
    StepExecutionError,
    StepTimeout,
    ValidationError,
)
from flowengine.models import CircuitBreakerSpec, DocumentConfig, RetrySpec, Step


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestRetryPolicy:
    def test_linear_delays(self):
        policy = RetryPolicy(max_attempts=4, backoff_kind="linear", backoff_ms=100)
        assert [policy.delay_ms(n) for n in (1, 2, 3)] == [100, 200, 300]

    def test_exponential_delays(self):
        policy = RetryPolicy(max_attempts=4, backoff_kind="exponential", backoff_ms=100)
        assert [policy.delay_ms(n) for n in (1, 2, 3)] == [100, 200, 400]

    def test_invalid(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(backoff_kind="fibonacci")

    def test_step_retry_wins_over_document(self):
        step = Step.model_validate({"id": "s", "type": "wait", "retry": {"maxAttempts": 2}})
        document_config = DocumentConfig.model_validate({"retryPolicy": {"maxAttempts": 5, "backoffMs": 10}})
        assert RetryPolicy.for_step(step, document_config).max_attempts == 2

    def test_document_default(self):
        step = Step.model_validate({"id": "s", "type": "wait"})
        document_config = DocumentConfig.model_validate({"retryPolicy": {"maxAttempts": 5, "backoffMs": 10}})
        policy = RetryPolicy.for_step(step, document_config)
        assert (policy.max_attempts, policy.backoff_ms) == (5, 10)
        assert RetryPolicy.for_step(step) == RetryPolicy()

    def test_from_spec(self):
        spec = RetrySpec.model_validate({"maxAttempts": 3, "backoffMs": 50, "exponential": True})
        assert RetryPolicy.from_spec(spec) == RetryPolicy(3, "exponential", 50)


class TestCircuitBreaker:
    """State transitions with an injected clock."""

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("s:action", failure_threshold=2, recovery_timeout_ms=1000, clock=FakeClock())
        breaker.before_call()
        breaker.record_failure()
        assert breaker.state == "closed"
        breaker.before_call()
        breaker.record_failure()
        assert breaker.state == "open"

        with pytest.raises(CircuitOpen):
            breaker.before_call()

    def test_success_resets_count(self):
        breaker = CircuitBreaker("s:action", failure_threshold=2, clock=FakeClock())
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == "closed"
        assert breaker.failure_count == 1

    def test_half_open_trial_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker("s:action", failure_threshold=1, recovery_timeout_ms=500, clock=clock)
        breaker.record_failure()
        clock.advance(0.5)

        breaker.before_call()
        assert breaker.state == "half_open"
        # Only one trial call at a time
        with pytest.raises(CircuitOpen):
            breaker.before_call()

        breaker.record_success()
        assert breaker.state == "closed"
        assert breaker.to_dict() == {"key": "s:action", "state": "closed", "failure_count": 0}

    def test_half_open_trial_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("s:action", failure_threshold=3, recovery_timeout_ms=500, clock=clock)
        for _ in range(3):
            breaker.record_failure()
        clock.advance(1)
        breaker.before_call()
        breaker.record_failure()

        assert breaker.state == "open"
        with pytest.raises(CircuitOpen):
            breaker.before_call()

    def test_released_trial_admits_next_call(self):
        clock = FakeClock()
        breaker = CircuitBreaker("s:action", failure_threshold=1, recovery_timeout_ms=500, clock=clock)
        breaker.record_failure()
        clock.advance(1)
        breaker.before_call()

        breaker.release_trial()

        assert breaker.state == "half_open"
        breaker.before_call()
        breaker.record_success()
        assert breaker.state == "closed"


class TestCircuitBreakerRegistry:
    def test_keyed_by_step_id_and_type(self):
        registry = CircuitBreakerRegistry(failure_threshold=4)
        step = Step.model_validate({"id": "s", "type": "action", "config": {"componentId": "x"}})

        breaker = registry.get(step)

        assert breaker.key == "s:action"
        assert registry.get(step) is breaker
        assert breaker.failure_threshold == 4
        assert registry.state("s:action") == "closed"

    def test_spec_overrides(self):
        registry = CircuitBreakerRegistry()
        step = Step.model_validate({"id": "s", "type": "wait"})
        spec = CircuitBreakerSpec.model_validate({"failureThreshold": 2, "recoveryTimeoutMs": 10})
        breaker = registry.get(step, spec)
        assert (breaker.failure_threshold, breaker.recovery_timeout_ms) == (2, 10)

    def test_reset(self):
        registry = CircuitBreakerRegistry()
        step = Step.model_validate({"id": "s", "type": "wait"})
        registry.get(step)
        registry.reset()
        assert registry.state("s:wait") is None


class Flaky:
    """Fails ``failures`` times, then returns ``value``."""

    def __init__(self, failures, error=None, value="ok"):
        self.failures = failures
        self.error = error or StepExecutionError("temporary failure")
        self.value = value
        self.calls = []

    async def __call__(self):
        self.calls.append(time.monotonic())
        if len(self.calls) <= self.failures:
            raise self.error
        return self.value


class TestExecuteWithPolicy:
    """execute_with_policy."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        result, attempts = await execute_with_policy(Flaky(0), step_id="s")
        assert (result, attempts) == ("ok", 1)

    @pytest.mark.asyncio
    async def test_retries_with_linear_backoff(self):
        operation = Flaky(2)
        policy = RetryPolicy(max_attempts=3, backoff_kind="linear", backoff_ms=100)

        result, attempts = await execute_with_policy(operation, retry=policy, step_id="s")

        assert (result, attempts) == ("ok", 3)
        gaps = [b - a for a, b in zip(operation.calls, operation.calls[1:])]
        assert gaps[0] >= 0.099
        assert gaps[1] >= 0.199

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_last_error(self):
        operation = Flaky(5)
        policy = RetryPolicy(max_attempts=3, backoff_ms=1)

        with pytest.raises(StepExecutionError) as exc_info:
            await execute_with_policy(operation, retry=policy, step_id="s")

        assert len(operation.calls) == 3
        assert exc_info.value.attempt == 3
        assert exc_info.value.step_id == "s"

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops(self):
        operation = Flaky(5, error=ValidationError("bad input"))
        with pytest.raises(ValidationError):
            await execute_with_policy(operation, retry=RetryPolicy(max_attempts=3), step_id="s")
        assert len(operation.calls) == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self):
        operation = Flaky(1, error=KeyError("boom"))
        result, attempts = await execute_with_policy(operation, retry=RetryPolicy(max_attempts=2), step_id="s")
        assert (result, attempts) == ("ok", 2)

    @pytest.mark.asyncio
    async def test_timeout_per_attempt(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(StepTimeout) as exc_info:
            await execute_with_policy(slow, timeout_ms=50, step_id="s")
        assert exc_info.value.code == "STEP_TIMEOUT"
        assert exc_info.value.attempt == 1

    @pytest.mark.asyncio
    async def test_breaker_fails_fast(self):
        breaker = CircuitBreaker("s:action", failure_threshold=2, recovery_timeout_ms=60000)
        operation = Flaky(10)

        with pytest.raises(CircuitOpen) as exc_info:
            await execute_with_policy(operation, retry=RetryPolicy(max_attempts=5), breaker=breaker, step_id="s")
        # Opened after the second failed attempt; the third was rejected without calling
        assert len(operation.calls) == 2
        assert breaker.state == "open"
        assert exc_info.value.attempt == 3

        with pytest.raises(CircuitOpen) as exc_info:
            await execute_with_policy(operation, breaker=breaker, step_id="s")
        assert exc_info.value.step_id == "s"
        assert len(operation.calls) == 2

    @pytest.mark.asyncio
    async def test_condition_not_met_does_not_trip_breaker(self):
        breaker = CircuitBreaker("s:condition", failure_threshold=1)
        operation = Flaky(1, error=ConditionNotMet("false"))
        with pytest.raises(ConditionNotMet):
            await execute_with_policy(operation, breaker=breaker, step_id="s")
        assert breaker.state == "closed"

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self):
        token = CancellationToken()
        operation = Flaky(5)
        policy = RetryPolicy(max_attempts=3, backoff_ms=5000)

        async def cancel_soon():
            await asyncio.sleep(0.05)
            token.cancel("stop")

        started = time.monotonic()
        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(RunCancelled):
            await execute_with_policy(operation, retry=policy, token=token, step_id="s")
        await canceller

        assert time.monotonic() - started < 2
        assert len(operation.calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_first_attempt(self):
        token = CancellationToken()
        token.cancel()
        operation = Flaky(0)
        with pytest.raises(RunCancelled):
            await execute_with_policy(operation, token=token, step_id="s")
        assert operation.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_trial_frees_breaker(self):
        clock = FakeClock()
        breaker = CircuitBreaker("s:action", failure_threshold=1, recovery_timeout_ms=500, clock=clock)
        breaker.record_failure()
        clock.advance(1)
        token = CancellationToken()

        async def slow_trial():
            await token.sleep(10)

        asyncio.get_running_loop().call_later(0.05, token.cancel)
        with pytest.raises(RunCancelled):
            await execute_with_policy(slow_trial, breaker=breaker, token=token, step_id="s")

        async def ok():
            return "ok"

        assert await execute_with_policy(ok, breaker=breaker, step_id="s") == ("ok", 1)
        assert breaker.state == "closed"

    @pytest.mark.asyncio
    async def test_cancelled_task_frees_breaker(self):
        clock = FakeClock()
        breaker = CircuitBreaker("s:action", failure_threshold=1, recovery_timeout_ms=500, clock=clock)
        breaker.record_failure()
        clock.advance(1)

        async def hang():
            await asyncio.sleep(10)

        task = asyncio.create_task(execute_with_policy(hang, breaker=breaker, step_id="s"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        async def ok():
            return "ok"

        assert await execute_with_policy(ok, breaker=breaker, step_id="s") == ("ok", 1)
        assert breaker.state == "closed"
