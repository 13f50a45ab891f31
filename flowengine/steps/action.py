"""Action step: dispatch to a Component Library capability."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Dict, List

from pydantic import ValidationError as PydanticValidationError

from ..errors import ComponentNotFound, StepExecutionError
from ..models import Step
from .base import BaseStepExecutor, StepRuntime
from .registry import register_step_executor

logger = logging.getLogger(__name__)


@register_step_executor(
    step_type="action",
    display_name="Action",
    description="Calls a registered component with the resolved inputs",
    required_config=["componentId"],
)
class ActionExecutor(BaseStepExecutor):
    """Looks up ``config.componentId`` and awaits ``execute(inputs, config)``."""

    async def execute(self, step: Step, inputs: Dict[str, Any], runtime: StepRuntime) -> Any:
        component_id = step.config.get("componentId")
        if runtime.library is None:
            raise ComponentNotFound(component_id, step_id=step.id)
        component = runtime.library.get(component_id)
        if component is None:
            raise ComponentNotFound(component_id, step_id=step.id)

        if component.schema is not None:
            try:
                component.schema.model_validate(inputs)
            except PydanticValidationError as e:
                raise StepExecutionError(
                    f"Inputs for component '{component_id}' are invalid: {e.error_count()} error(s)",
                    retryable=False,
                    step_id=step.id,
                    details={"errors": e.errors(include_url=False)},
                ) from e

        config = {**component.config, **step.config}
        logger.debug(f"Step {step.id}: calling component {component_id}")

        if inspect.iscoroutinefunction(component.execute):
            return await component.execute(inputs, config)

        result = await asyncio.to_thread(component.execute, inputs, config)
        if inspect.isawaitable(result):
            result = await result
        return result

    def validate_config(self, step: Step) -> List[Dict[str, str]]:
        errors = super().validate_config(step)
        component_id = step.config.get("componentId")
        if component_id is not None and not isinstance(component_id, str):
            errors.append({"field": "componentId", "error": "componentId must be a string"})
        return errors
