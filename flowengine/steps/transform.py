"""Transform step: map / filter / aggregate / template / expression.

The data to transform comes from the ``data`` input. The result is always
``{"result": value}`` so outputs and downstream references have one shape.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from ..errors import StepExecutionError
from ..models import ExecutionContext, Step
from ..utils import get_path, render_template
from ..engine.resolver import InputResolver
from ..engine.safe_eval import safe_eval
from .base import BaseStepExecutor, StepRuntime
from .condition import evaluate_condition
from .registry import register_step_executor

logger = logging.getLogger(__name__)

TRANSFORM_TYPES = ("map", "filter", "aggregate", "template", "expression")
AGGREGATE_OPERATIONS = ("count", "sum", "average", "max", "min")


def apply_map(data: Any, mapping: Mapping[str, str]) -> Any:
    """Project each item (or a single object) onto ``{target: source.path}``."""
    def project(item: Any) -> Dict[str, Any]:
        return {target: get_path(item, source) for target, source in mapping.items()}

    if isinstance(data, list):
        return [project(item) for item in data]
    return project(data)


def apply_filter(
    data: Any,
    condition: Any,
    resolver: InputResolver,
    context: ExecutionContext,
    extra: Optional[Mapping[str, Any]] = None,
) -> Any:
    """Keep the items for which ``condition`` holds.

    The condition sees ``item`` and ``index`` in its expression namespace.
    Non-list data is returned unchanged.
    """
    if not isinstance(data, list):
        return data
    if condition is None:
        return list(data)

    kept = []
    for index, item in enumerate(data):
        names = {**(extra or {}), "item": item, "index": index}
        if evaluate_condition(condition, resolver, context, names):
            kept.append(item)
    return kept


def _numbers(data: List[Any], field: Optional[str]) -> List[float]:
    values = []
    for item in data:
        value = get_path(item, field) if field else item
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if isinstance(value, float) and math.isnan(value):
            continue
        values.append(value)
    return values


def apply_aggregate(data: Any, operation: str, field: Optional[str] = None) -> Any:
    """Aggregate a numeric field path over a list.

    Empty input: count and sum are 0, average/max/min are None. Non-numeric
    values are skipped.
    """
    if not isinstance(data, list):
        data = [] if data is None else [data]

    if operation == "count":
        if field:
            return len([item for item in data if get_path(item, field) is not None])
        return len(data)

    values = _numbers(data, field)
    if operation == "sum":
        return sum(values)
    if not values:
        return None
    if operation == "average":
        return sum(values) / len(values)
    if operation == "max":
        return max(values)
    if operation == "min":
        return min(values)
    raise StepExecutionError(f"Unknown aggregate operation: {operation}", retryable=False)


@register_step_executor(
    step_type="transform",
    display_name="Transform",
    description="Reshapes data with map, filter, aggregate, template or expression",
    required_config=["transform"],
)
class TransformExecutor(BaseStepExecutor):

    async def execute(self, step: Step, inputs: Dict[str, Any], runtime: StepRuntime) -> Any:
        transform = step.config.get("transform") or {}
        kind = transform.get("type")
        config = transform.get("config") or {}
        data = inputs.get("data")

        if kind == "map":
            result = apply_map(data, config.get("mapping") or {})
        elif kind == "filter":
            result = apply_filter(
                data, config.get("condition"), runtime.resolver, runtime.context, {"inputs": inputs}
            )
        elif kind == "aggregate":
            result = apply_aggregate(data, config.get("operation", "count"), config.get("field"))
        elif kind == "template":
            result = render_template(str(config.get("template", "")), inputs)
        elif kind == "expression":
            names = runtime.resolver.namespace(runtime.context, {"inputs": inputs, "data": data})
            result = safe_eval(config.get("expression"), names)
        else:
            raise StepExecutionError(
                f"Unknown transform type: {kind}", retryable=False, step_id=step.id
            )

        logger.debug(f"Step {step.id}: {kind} transform complete")
        return {"result": result}

    def validate_config(self, step: Step) -> List[Dict[str, str]]:
        errors = super().validate_config(step)
        transform = step.config.get("transform")
        if transform is None:
            return errors
        if not isinstance(transform, Mapping):
            errors.append({"field": "transform", "error": "transform must be an object"})
            return errors

        kind = transform.get("type")
        config = transform.get("config") or {}
        if kind not in TRANSFORM_TYPES:
            errors.append({
                "field": "transform.type",
                "error": f"Unknown transform type '{kind}'. Available: {list(TRANSFORM_TYPES)}",
            })
        elif kind == "map" and not isinstance(config.get("mapping"), Mapping):
            errors.append({"field": "transform.config.mapping", "error": "map requires a mapping object"})
        elif kind == "aggregate" and config.get("operation", "count") not in AGGREGATE_OPERATIONS:
            errors.append({
                "field": "transform.config.operation",
                "error": f"operation must be one of {list(AGGREGATE_OPERATIONS)}",
            })
        elif kind == "template" and not isinstance(config.get("template"), str):
            errors.append({"field": "transform.config.template", "error": "template must be a string"})
        elif kind == "expression" and not config.get("expression"):
            errors.append({"field": "transform.config.expression", "error": "expression is required"})
        return errors
