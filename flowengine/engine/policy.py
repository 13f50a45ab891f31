"""Retry & Circuit-Breaker Policy.

Wraps a single step execution with bounded retries and a per-step circuit
breaker that is consulted before every attempt.

Breaker states:
- closed: normal operation
- open: too many failures, calls fail fast with CircuitOpen
- half_open: recovery timeout elapsed, exactly one trial call admitted
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .. import settings
from ..errors import (
    CircuitOpen,
    ConditionNotMet,
    RunCancelled,
    StepExecutionError,
    StepTimeout,
    WorkflowError,
)
from ..models import CircuitBreakerSpec, DocumentConfig, RetrySpec, Step
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with linear or exponential backoff."""

    max_attempts: int = 1
    backoff_kind: str = "linear"
    backoff_ms: int = 0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_kind not in ("linear", "exponential"):
            raise ValueError(f"Unknown backoff kind: {self.backoff_kind}")

    def delay_ms(self, attempt: int) -> int:
        """Delay after the given failed attempt (1-based), before the next one.

        linear: backoff_ms * attempt (100, 200, 300, ...)
        exponential: backoff_ms * 2^(attempt-1) (100, 200, 400, ...)
        """
        if self.backoff_kind == "exponential":
            return self.backoff_ms * (2 ** (attempt - 1))
        return self.backoff_ms * attempt

    @classmethod
    def from_spec(cls, spec: Optional[RetrySpec]) -> "RetryPolicy":
        if spec is None:
            return cls()
        return cls(max_attempts=spec.max_attempts, backoff_kind=spec.backoff_kind, backoff_ms=spec.backoff_ms)

    @classmethod
    def for_step(cls, step: Step, document_config: Optional[DocumentConfig] = None) -> "RetryPolicy":
        """Step retry if declared, else the document retryPolicy, else one attempt."""
        if step.retry is not None:
            return cls.from_spec(step.retry)
        if document_config is not None and document_config.retry_policy is not None:
            return cls.from_spec(document_config.retry_policy)
        return cls()


class CircuitBreaker:
    """
    Per-step circuit breaker.

    Args:
        key: Breaker key ("step_id:step_type")
        failure_threshold: Consecutive failures before opening
        recovery_timeout_ms: Time before a half-open trial is admitted
        clock: Monotonic clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        key: str,
        failure_threshold: int = settings.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout_ms: int = settings.CIRCUIT_RECOVERY_TIMEOUT_MS,
        clock: Optional[Clock] = None,
    ):
        self.key = key
        self.failure_threshold = failure_threshold
        self.recovery_timeout_ms = recovery_timeout_ms
        self._clock = clock or time.monotonic

        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.state = "closed"
        self._trial_in_flight = False

    def _recovery_elapsed(self) -> bool:
        if self.opened_at is None:
            return True
        return (self._clock() - self.opened_at) * 1000 >= self.recovery_timeout_ms

    def before_call(self) -> None:
        """Admit or reject a call.

        Raises:
            CircuitOpen: While open (before the recovery timeout) or while a
                half-open trial call is already in flight
        """
        if self.state == "open":
            if not self._recovery_elapsed():
                raise CircuitOpen(
                    f"Circuit breaker is open for {self.key}",
                    details={"key": self.key, "failures": self.failure_count},
                )
            self.state = "half_open"
            self._trial_in_flight = False
            logger.info(f"Circuit breaker half-open: {self.key}")

        if self.state == "half_open":
            if self._trial_in_flight:
                raise CircuitOpen(
                    f"Circuit breaker is half-open for {self.key}; trial call in progress",
                    details={"key": self.key, "failures": self.failure_count},
                )
            self._trial_in_flight = True

    def record_success(self) -> None:
        if self.state != "closed":
            logger.info(f"Circuit breaker closed: {self.key}")
        self.failure_count = 0
        self.opened_at = None
        self.state = "closed"
        self._trial_in_flight = False

    def release_trial(self) -> None:
        """Free the half-open trial slot when the trial call ended without an outcome (cancelled)."""
        if self._trial_in_flight:
            logger.info(f"Circuit breaker trial released: {self.key}")
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self.failure_count += 1
        self._trial_in_flight = False
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            if self.state != "open":
                logger.warning(
                    f"Circuit breaker opened: {self.key} after {self.failure_count} failure(s)"
                )
            self.state = "open"
            self.opened_at = self._clock()

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "state": self.state, "failure_count": self.failure_count}


class CircuitBreakerRegistry:
    """Breakers keyed by "step_id:step_type"; share one instance across runs to persist state."""

    def __init__(
        self,
        failure_threshold: int = settings.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout_ms: int = settings.CIRCUIT_RECOVERY_TIMEOUT_MS,
        clock: Optional[Clock] = None,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout_ms = recovery_timeout_ms
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    @staticmethod
    def key_for(step: Step) -> str:
        return f"{step.id}:{step.type}"

    def get(self, step: Step, spec: Optional[CircuitBreakerSpec] = None) -> CircuitBreaker:
        """Return the breaker for a step, creating it on first use."""
        key = self.key_for(step)
        breaker = self._breakers.get(key)
        if breaker is None:
            threshold = self.failure_threshold
            recovery = self.recovery_timeout_ms
            if spec is not None:
                threshold = spec.failure_threshold or threshold
                if spec.recovery_timeout_ms is not None:
                    recovery = spec.recovery_timeout_ms
            breaker = CircuitBreaker(key, threshold, recovery, self._clock)
            self._breakers[key] = breaker
        return breaker

    def state(self, key: str) -> Optional[str]:
        breaker = self._breakers.get(key)
        return breaker.state if breaker else None

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._breakers.clear()
        else:
            self._breakers.pop(key, None)


def _wrap_error(error: BaseException, step_id: Optional[str]) -> WorkflowError:
    if isinstance(error, WorkflowError):
        return error
    wrapped = StepExecutionError(f"Step '{step_id}' failed: {error}", step_id=step_id)
    wrapped.__cause__ = error
    return wrapped


async def execute_with_policy(
    operation: Callable[[], Awaitable[Any]],
    *,
    retry: Optional[RetryPolicy] = None,
    breaker: Optional[CircuitBreaker] = None,
    timeout_ms: Optional[int] = None,
    token: Optional[CancellationToken] = None,
    step_id: Optional[str] = None,
) -> Tuple[Any, int]:
    """Run ``operation`` under retry, breaker and per-attempt timeout.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        retry: Retry policy (default: single attempt)
        breaker: Circuit breaker consulted before each attempt
        timeout_ms: Per-attempt timeout (not the whole retry sequence)
        token: Cancellation token; backoff sleeps abort when cancelled
        step_id: Step id attached to raised errors

    Returns:
        Tuple of (result, attempts used)

    Raises:
        CircuitOpen: Breaker rejected the call (never retried)
        RunCancelled: Cancellation observed between attempts
        WorkflowError: The last attempt's error once retries are exhausted
    """
    retry = retry or RetryPolicy()
    last_error: Optional[WorkflowError] = None

    for attempt in range(1, retry.max_attempts + 1):
        if token is not None:
            token.raise_if_cancelled()

        if breaker is not None:
            try:
                breaker.before_call()
            except CircuitOpen as e:
                e.step_id = step_id
                e.attempt = attempt
                logger.warning(f"Step {step_id}: {e.message}")
                raise

        try:
            if timeout_ms:
                result = await asyncio.wait_for(operation(), timeout=timeout_ms / 1000)
            else:
                result = await operation()
        except asyncio.TimeoutError:
            error: WorkflowError = StepTimeout(
                f"Step '{step_id}' timed out after {timeout_ms}ms", step_id=step_id
            )
        except (RunCancelled, asyncio.CancelledError):
            if breaker is not None:
                breaker.release_trial()
            raise
        except Exception as e:
            error = _wrap_error(e, step_id)
        else:
            if breaker is not None:
                breaker.record_success()
            return result, attempt

        if breaker is not None:
            if isinstance(error, ConditionNotMet):
                # The call itself worked; the outcome was a routing decision
                breaker.record_success()
            else:
                breaker.record_failure()

        if error.step_id is None:
            error.step_id = step_id
        error.attempt = attempt
        last_error = error

        if not error.retryable or attempt >= retry.max_attempts:
            break

        delay = retry.delay_ms(attempt)
        logger.warning(
            f"Step {step_id} attempt {attempt}/{retry.max_attempts} failed: {error.message}; "
            f"retrying in {delay}ms"
        )
        if token is not None:
            await token.sleep(delay / 1000)
        elif delay > 0:
            await asyncio.sleep(delay / 1000)

    assert last_error is not None
    raise last_error
