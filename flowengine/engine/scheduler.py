"""Dependency Resolver & Scheduler.

Executes a flow demand-driven and depth-first: steps are visited in their
declared order and each step first ensures the steps it reads from have
run. Steps targeted by onSuccess/onFailure edges are gated and only run
when an edge routes to them (or another step needs their result).

Failure handling for a step, in order:
1. Retry policy (per-attempt timeout, circuit breaker consulted first)
2. onFailure edges (the step is recovered and the run continues)
3. Document error handlers (first pattern match)
4. Abort: the error becomes the run's terminal error
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from ..config import EngineConfig
from ..errors import (
    CircularDependency,
    ConditionNotMet,
    ExpressionError,
    ResolutionError,
    RunCancelled,
    RunTimeout,
    TriggerRejected,
    ValidationError,
    WorkflowError,
)
from ..models import ExecutionContext, Flow, Step, WorkflowDocument, load_document
from ..steps.base import BaseStepExecutor, StepRuntime
from ..steps.condition import evaluate_condition
from ..steps.registry import STEP_EXECUTORS
from .cancellation import CancellationToken
from .policy import CircuitBreakerRegistry, RetryPolicy, execute_with_policy
from .resolver import InputResolver
from .validation import raise_for_issues, validate_flow

logger = logging.getLogger(__name__)

STEP_STATUSES = (
    "pending", "running", "succeeded", "failed", "recovered", "skipped", "condition_false", "cancelled",
)


@dataclass
class StepState:
    """Execution state of one step, returned for diagnostics."""

    step_id: str
    status: str = "pending"
    attempts: int = 0
    error: Optional[Dict[str, Any]] = None
    duration_ms: Optional[float] = None
    started_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "started_at": self.started_at,
        }


@dataclass
class RunResult:
    """Outcome of a run: outputs, per-step states and the terminal error (if any)."""

    run_id: str
    flow_id: str
    status: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    step_states: Dict[str, StepState] = field(default_factory=dict)
    step_results: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[WorkflowError] = None
    output_writes: List[Dict[str, Any]] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "flow_id": self.flow_id,
            "status": self.status,
            "outputs": self.outputs,
            "step_states": {k: v.to_dict() for k, v in self.step_states.items()},
            "step_results": self.step_results,
            "variables": self.variables,
            "errors": self.errors,
            "error": self.error.to_dict() if self.error else None,
            "output_writes": self.output_writes,
            "duration_ms": self.duration_ms,
        }


ExecutorOverride = Union[BaseStepExecutor, type]


class Scheduler:
    """Runs flows with injected collaborators.

    Args:
        library: Component Library used by action steps
        auth_manager: Authentication Manager handed to components via the runtime
        custom_runner: Runner for custom steps (default: restricted interpreter)
        breakers: Circuit breaker registry; share one to keep breaker state across runs
        executors: Executor overrides keyed by step type (instances or classes)
        config: Engine configuration
    """

    def __init__(
        self,
        library=None,
        auth_manager=None,
        custom_runner=None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        executors: Optional[Mapping[str, ExecutorOverride]] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig()
        self.library = library
        self.auth_manager = auth_manager
        self.custom_runner = custom_runner
        self.breakers = breakers or CircuitBreakerRegistry(
            failure_threshold=self.config.failure_threshold,
            recovery_timeout_ms=self.config.recovery_timeout_ms,
        )
        self.executors: Dict[str, BaseStepExecutor] = {
            step_type: cls() for step_type, cls in STEP_EXECUTORS.items()
        }
        for step_type, executor in (executors or {}).items():
            self.executors[step_type] = executor() if isinstance(executor, type) else executor

    def validate(self, flow: Flow, document: Optional[WorkflowDocument] = None):
        return validate_flow(flow, document, self.executors)

    async def run(
        self,
        flow: Flow,
        initial_inputs: Optional[Mapping[str, Any]] = None,
        document: Optional[WorkflowDocument] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RunResult:
        """Execute a flow and return its RunResult (errors are returned, not raised)."""
        return await _FlowRun(self, flow, document, initial_inputs, cancel_token).execute()


class _FlowRun:
    """State of a single run. Created and discarded by Scheduler.run."""

    def __init__(
        self,
        scheduler: Scheduler,
        flow: Flow,
        document: Optional[WorkflowDocument],
        initial_inputs: Optional[Mapping[str, Any]],
        cancel_token: Optional[CancellationToken],
    ):
        self.scheduler = scheduler
        self.flow = flow
        self.document = document
        self.initial_inputs = dict(initial_inputs or {})
        self.token = cancel_token or CancellationToken()
        self.run_id = uuid.uuid4().hex
        self.context = ExecutionContext.for_flow(flow, self.initial_inputs)
        self.resolver = InputResolver(document)

        self.steps: Dict[str, Step] = {step.id: step for step in flow.steps}
        self.states: Dict[str, StepState] = {step.id: StepState(step.id) for step in flow.steps}
        self.gated = {target for step in flow.steps for target in [*step.on_success, *step.on_failure]}
        if document is not None:
            # Compensation steps run only when their error handler applies
            for handler in document.error_handlers:
                if handler.action in ("compensate", "custom"):
                    self.gated.update(handler.config.get("steps") or [])
        self.completed: set = set()
        self.in_progress: List[str] = []

    @property
    def document_config(self):
        return self.document.config if self.document is not None else None

    async def execute(self) -> RunResult:
        started = time.monotonic()
        logger.info(f"Run {self.run_id}: starting flow {self.flow.id}")

        status = "succeeded"
        error: Optional[WorkflowError] = None
        outputs: Dict[str, Any] = {}

        try:
            raise_for_issues(self.scheduler.validate(self.flow, self.document))
            self._check_trigger()
            timeout_ms = self.document_config.timeout if self.document_config else None
            if timeout_ms:
                try:
                    outputs = await asyncio.wait_for(self._walk(), timeout=timeout_ms / 1000)
                except asyncio.TimeoutError:
                    error = RunTimeout(f"Run exceeded timeout of {timeout_ms}ms")
                    self.token.cancel(error=error)
                    raise error
            else:
                outputs = await self._walk()
        except RunCancelled as e:
            status, error = "cancelled", e
            self._mark_cancelled()
        except (ValidationError, CircularDependency, TriggerRejected) as e:
            status, error = "failed", e
            logger.error(f"Run {self.run_id}: flow {self.flow.id} rejected: {e.message}")
        except WorkflowError as e:
            status, error = "failed", e

        duration_ms = (time.monotonic() - started) * 1000
        if error is None:
            logger.info(f"Run {self.run_id}: flow {self.flow.id} succeeded in {duration_ms:.0f}ms")
        else:
            logger.error(f"Run {self.run_id}: flow {self.flow.id} {status}: [{error.code}] {error.message}")

        return RunResult(
            run_id=self.run_id,
            flow_id=self.flow.id,
            status=status,
            outputs=outputs,
            step_states=self.states,
            step_results=dict(self.context.step_results),
            variables=dict(self.context.variables),
            errors=list(self.context.errors),
            error=error,
            output_writes=list(self.context.output_writes),
            duration_ms=duration_ms,
        )

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    def _check_trigger(self) -> None:
        if self.document is None or not self.flow.trigger_id:
            return
        trigger = self.document.get_trigger(self.flow.trigger_id)
        if trigger is None:
            raise TriggerRejected(f"Unknown trigger: {self.flow.trigger_id}")
        if not trigger.enabled:
            raise TriggerRejected(f"Trigger '{trigger.id}' is disabled")

        required = trigger.config.get("requiredInputs") or []
        missing = [name for name in required if self.initial_inputs.get(name) is None]
        if missing:
            raise TriggerRejected(
                f"Trigger '{trigger.id}' is missing required inputs: {missing}",
                details={"missing": missing},
            )

        for index, condition in enumerate(trigger.conditions):
            if not evaluate_condition(condition, self.resolver, self.context, {"inputs": self.initial_inputs}):
                raise TriggerRejected(
                    f"Trigger '{trigger.id}' condition {index} not satisfied",
                    details={"condition": index},
                )

    # ------------------------------------------------------------------
    # Walk
    # ------------------------------------------------------------------

    async def _walk(self) -> Dict[str, Any]:
        for step in self.flow.steps:
            if step.id in self.gated:
                continue
            await self._ensure(step.id)

        for state in self.states.values():
            if state.status == "pending":
                state.status = "skipped"

        return self._evaluate_outputs()

    async def _ensure(self, step_id: str) -> None:
        """Run a step (after its dependencies) unless it already completed."""
        if step_id in self.completed:
            return
        if step_id in self.in_progress:
            cycle = self.in_progress[self.in_progress.index(step_id):] + [step_id]
            raise CircularDependency(step_id, cycle)

        step = self.steps[step_id]
        self.in_progress.append(step_id)
        try:
            for dep in step.dependencies():
                if dep in self.steps:
                    await self._ensure(dep)
            outcome = await self._run_step(step)
        finally:
            self.in_progress.remove(step_id)
        self.completed.add(step_id)

        if outcome == "succeeded":
            targets = step.on_success
        elif outcome == "recovered":
            targets = step.on_failure
        else:
            targets = []
        for target in targets:
            logger.debug(f"Step {step_id}: following edge to {target}")
            await self._ensure(target)

    async def _run_step(self, step: Step) -> str:
        """Execute one top-level step; returns its final status."""
        self.token.raise_if_cancelled()
        state = self.states[step.id]
        state.status = "running"
        state.started_at = datetime.now(timezone.utc).isoformat()
        started = time.monotonic()
        logger.info(f"Step {step.id} ({step.type}) started")

        try:
            result, attempts = await self._attempt(step, self.context)
        except RunCancelled:
            state.status = "cancelled"
            state.duration_ms = (time.monotonic() - started) * 1000
            raise
        except WorkflowError as e:
            state.attempts = e.attempt or 1
            state.duration_ms = (time.monotonic() - started) * 1000
            return await self._handle_failure(step, state, e)

        await self.context.record_result(step, result)
        state.status = "succeeded"
        state.attempts = attempts
        state.duration_ms = (time.monotonic() - started) * 1000
        logger.info(f"Step {step.id} completed in {state.duration_ms:.0f}ms ({attempts} attempt(s))")
        return "succeeded"

    async def _attempt(
        self, step: Step, context: ExecutionContext, retry: Optional[RetryPolicy] = None
    ) -> Tuple[Any, int]:
        executor = self.scheduler.executors.get(step.type)
        if executor is None:
            raise ValidationError(f"No executor registered for step type '{step.type}'", step_id=step.id)

        runtime = StepRuntime(
            context=context,
            resolver=self.resolver,
            config=self.scheduler.config,
            run_inline=self._run_inline,
            library=self.scheduler.library,
            auth_manager=self.scheduler.auth_manager,
            custom_runner=self.scheduler.custom_runner,
            cancel_token=self.token,
            document=self.document,
        )

        async def operation() -> Any:
            inputs = self.resolver.resolve_all(step.inputs, context)
            return await executor.execute(step, inputs, runtime)

        return await execute_with_policy(
            operation,
            retry=retry or RetryPolicy.for_step(step, self.document_config),
            breaker=self._breaker_for(step),
            timeout_ms=step.timeout or self.scheduler.config.default_step_timeout_ms,
            token=self.token,
            step_id=step.id,
        )

    def _breaker_for(self, step: Step):
        if not self.scheduler.config.circuit_breaker_enabled:
            return None
        spec = self.document_config.circuit_breaker if self.document_config else None
        if spec is not None and not spec.enabled:
            return None
        return self.scheduler.breakers.get(step, spec)

    async def _run_inline(self, step: Step, context: ExecutionContext) -> Any:
        """Run a nested step (loop body / parallel branch) with the full policy."""
        self.token.raise_if_cancelled()
        state = self.states.setdefault(step.id, StepState(step.id))
        if state.started_at is None:
            state.started_at = datetime.now(timezone.utc).isoformat()
        state.status = "running"
        try:
            result, attempts = await self._attempt(step, context)
        except RunCancelled:
            state.status = "cancelled"
            raise
        except WorkflowError as e:
            state.status = "failed"
            state.attempts += e.attempt or 1
            state.error = e.to_dict()
            await context.record_error(e, step.id)
            raise
        state.attempts += attempts
        state.status = "succeeded"
        await context.record_result(step, result)
        return result

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _handle_failure(self, step: Step, state: StepState, error: WorkflowError) -> str:
        if isinstance(error, ConditionNotMet) and not step.on_failure:
            state.status = "condition_false"
            await self.context.record_result(step, {"result": False, "condition": step.config.get("condition")})
            logger.info(f"Step {step.id}: condition false, no failure edge")
            return "condition_false"

        state.error = error.to_dict()
        await self.context.record_error(error, step.id)

        if step.on_failure:
            state.status = "recovered"
            logger.warning(f"Step {step.id} failed ({error.code}); following onFailure edges {step.on_failure}")
            return "recovered"

        handler = self._match_error_handler(error)
        if handler is None:
            state.status = "failed"
            logger.error(f"Step {step.id} failed: [{error.code}] {error.message}")
            raise error

        logger.warning(f"Step {step.id}: error handler '{handler.id}' ({handler.action}) applies")
        config = handler.config

        if handler.action == "skip":
            state.status = "skipped"
            return "skipped"

        if handler.action == "retry":
            retry = RetryPolicy(
                max_attempts=int(config.get("maxAttempts", 1)),
                backoff_kind=config.get("backoffKind", "linear"),
                backoff_ms=int(config.get("backoffMs", 0)),
            )
            try:
                result, attempts = await self._attempt(step, self.context, retry)
            except WorkflowError as retry_error:
                state.status = "failed"
                state.attempts += retry_error.attempt or 1
                state.error = retry_error.to_dict()
                await self.context.record_error(retry_error, step.id)
                raise retry_error
            state.attempts += attempts
            state.status = "succeeded"
            state.error = None
            await self.context.record_result(step, result)
            return "succeeded"

        if handler.action in ("compensate", "custom"):
            for compensation_id in config.get("steps") or []:
                if compensation_id in self.steps:
                    await self._ensure(compensation_id)
            if handler.action == "custom":
                state.status = "recovered"
                return "handled"

        state.status = "failed"
        raise error

    def _match_error_handler(self, error: WorkflowError):
        if self.document is None:
            return None
        for handler in self.document.error_handlers:
            try:
                pattern = re.compile(handler.pattern)
            except re.error as e:
                logger.warning(f"Error handler {handler.id} has an invalid pattern: {e}")
                continue
            if pattern.search(error.code) or pattern.search(error.message):
                return handler
        return None

    def _mark_cancelled(self) -> None:
        for state in self.states.values():
            if state.status in ("pending", "running"):
                state.status = "cancelled"

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def _evaluate_outputs(self) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {}
        for name, output in self.flow.outputs.items():
            try:
                outputs[name] = self.resolver.resolve(output, self.context)
            except (ResolutionError, ExpressionError) as e:
                logger.warning(f"Flow output '{name}' could not be resolved: {e.message}")
                outputs[name] = None
        return outputs


async def run_flow(
    flow: Union[Flow, Dict[str, Any]],
    initial_inputs: Optional[Mapping[str, Any]] = None,
    *,
    document: Optional[WorkflowDocument] = None,
    cancel_token: Optional[CancellationToken] = None,
    **scheduler_kwargs: Any,
) -> RunResult:
    """Convenience wrapper: build a Scheduler and run one flow."""
    if not isinstance(flow, Flow):
        flow = Flow.model_validate(flow)
    scheduler = Scheduler(**scheduler_kwargs)
    return await scheduler.run(flow, initial_inputs, document=document, cancel_token=cancel_token)


async def run_document(
    document: Union[WorkflowDocument, Dict[str, Any], str],
    flow_id: Optional[str] = None,
    initial_inputs: Optional[Mapping[str, Any]] = None,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **scheduler_kwargs: Any,
) -> RunResult:
    """Run a flow of a document (the first flow when ``flow_id`` is omitted).

    Raises:
        ValidationError: If the document has no such flow
    """
    if not isinstance(document, WorkflowDocument):
        document = load_document(document)
    if flow_id is None:
        if not document.flows:
            raise ValidationError("Document contains no flows")
        flow = document.flows[0]
    else:
        flow = document.get_flow(flow_id)
        if flow is None:
            raise ValidationError(f"Flow not found: {flow_id}")
    scheduler = Scheduler(**scheduler_kwargs)
    return await scheduler.run(flow, initial_inputs, document=document, cancel_token=cancel_token)
