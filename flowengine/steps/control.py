"""Control-flow steps: wait, loop and parallel."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from ..errors import StepExecutionError
from ..models import Step
from .base import BaseStepExecutor, StepRuntime
from .registry import register_step_executor

logger = logging.getLogger(__name__)


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _inline_issues(step: Step, field: str) -> List[Dict[str, str]]:
    try:
        step.inline_steps()
    except ValueError as e:
        return [{"field": field, "error": f"Invalid inline step: {e}"}]
    return []


@register_step_executor(
    step_type="wait",
    display_name="Wait",
    description="Suspends the flow for a duration (cancellable)",
)
class WaitExecutor(BaseStepExecutor):

    async def execute(self, step: Step, inputs: Dict[str, Any], runtime: StepRuntime) -> Any:
        duration = step.config.get("durationMs", inputs.get("durationMs", 0))
        try:
            duration_ms = max(0, int(duration or 0))
        except (TypeError, ValueError) as e:
            raise StepExecutionError(
                f"Invalid wait duration: {duration!r}", retryable=False, step_id=step.id
            ) from e

        if duration_ms > runtime.config.wait_max_ms:
            logger.warning(
                f"Step {step.id}: wait of {duration_ms}ms capped at {runtime.config.wait_max_ms}ms"
            )
            duration_ms = runtime.config.wait_max_ms

        if runtime.cancel_token is not None:
            await runtime.cancel_token.sleep(duration_ms / 1000)
        else:
            await asyncio.sleep(duration_ms / 1000)
        return {"waitedMs": duration_ms}

    def validate_config(self, step: Step) -> List[Dict[str, str]]:
        errors = super().validate_config(step)
        duration = step.config.get("durationMs")
        if duration is None and "durationMs" not in step.inputs:
            errors.append({"field": "durationMs", "error": "durationMs is required (config or input)"})
        elif duration is not None and (not isinstance(duration, (int, float)) or isinstance(duration, bool) or duration < 0):
            errors.append({"field": "durationMs", "error": "durationMs must be a non-negative number"})
        return errors


@register_step_executor(
    step_type="loop",
    display_name="Loop",
    description="Runs an inline step once per item of a list input",
    required_config=["step"],
)
class LoopExecutor(BaseStepExecutor):
    """Sequential, bounded iteration.

    Each iteration runs in a scoped context exposing ``item`` and ``index``
    (renamable with ``itemVariable`` / ``indexVariable``); variables written
    by the body stay inside the iteration.
    """

    async def execute(self, step: Step, inputs: Dict[str, Any], runtime: StepRuntime) -> Any:
        config = step.config
        items_input = config.get("itemsInput", "items")
        items = inputs.get(items_input)
        if not isinstance(items, list):
            raise StepExecutionError(
                f"Loop input '{items_input}' must be a list, got {type(items).__name__}",
                retryable=False,
                step_id=step.id,
            )

        max_iterations = config.get("maxIterations") or runtime.config.loop_max_iterations
        if len(items) > max_iterations:
            raise StepExecutionError(
                f"Loop over {len(items)} items exceeds maxIterations={max_iterations}",
                retryable=False,
                step_id=step.id,
                details={"items": len(items), "max_iterations": max_iterations},
            )

        body = step.inline_steps()[0]
        item_var = config.get("itemVariable", "item")
        index_var = config.get("indexVariable", "index")

        results = []
        for index, item in enumerate(items):
            if runtime.cancel_token is not None:
                runtime.cancel_token.raise_if_cancelled()
            scoped = runtime.context.scoped({item_var: item, index_var: index})
            results.append(await runtime.run_inline(body, scoped))

        logger.debug(f"Step {step.id}: loop completed {len(results)} iteration(s)")
        return {"results": results, "count": len(results)}

    def validate_config(self, step: Step) -> List[Dict[str, str]]:
        errors = super().validate_config(step)
        if "step" in step.config:
            errors.extend(_inline_issues(step, "step"))
        max_iterations = step.config.get("maxIterations")
        if max_iterations is not None and not _positive_int(max_iterations):
            errors.append({"field": "maxIterations", "error": "maxIterations must be a positive integer"})
        return errors


@register_step_executor(
    step_type="parallel",
    display_name="Parallel",
    description="Runs inline branches concurrently and joins them",
    required_config=["steps"],
)
class ParallelExecutor(BaseStepExecutor):
    """Concurrent branches behind a semaphore, joined with asyncio.gather.

    Every branch settles before the step completes; if any branch failed the
    step fails with the first failure in branch order.
    """

    async def execute(self, step: Step, inputs: Dict[str, Any], runtime: StepRuntime) -> Any:
        branches = step.inline_steps()
        limit = step.config.get("concurrency")
        if not limit and runtime.document is not None:
            limit = runtime.document.config.concurrency_limit
        limit = limit or runtime.config.parallel_max_concurrency
        semaphore = asyncio.Semaphore(limit)

        async def run_branch(branch: Step) -> Any:
            async with semaphore:
                return await runtime.run_inline(branch, runtime.context)

        outcomes = await asyncio.gather(
            *(run_branch(branch) for branch in branches), return_exceptions=True
        )

        results: Dict[str, Any] = {}
        first_error = None
        for branch, outcome in zip(branches, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                first_error = first_error or outcome
                logger.error(f"Step {step.id}: branch {branch.id} failed: {outcome}")
            else:
                results[branch.id] = outcome

        if first_error is not None:
            raise first_error
        return {"results": results}

    def validate_config(self, step: Step) -> List[Dict[str, str]]:
        errors = super().validate_config(step)
        if "steps" in step.config:
            if not isinstance(step.config["steps"], list):
                errors.append({"field": "steps", "error": "steps must be a list"})
                return errors
            errors.extend(_inline_issues(step, "steps"))
        concurrency = step.config.get("concurrency")
        if concurrency is not None and not _positive_int(concurrency):
            errors.append({"field": "concurrency", "error": "concurrency must be a positive integer"})
        return errors
