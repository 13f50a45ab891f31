"""Condition step: structured condition evaluation.

Condition types:
- expression: truthiness of a restricted expression (``left.value``)
- comparison: ``compare(left, operator, right)``
- existence: the resolved left value is not None
- custom: a named predicate from CUSTOM_PREDICATES

Evaluation is tolerant: an error while evaluating is logged and the
condition is false.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import date, datetime, time as dt_time
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from zoneinfo import ZoneInfo

from pydantic import ValidationError as PydanticValidationError

from ..errors import ConditionNotMet, WorkflowError
from ..models import Condition, ExecutionContext, Step
from ..engine.resolver import InputResolver
from ..engine.safe_eval import safe_eval
from .base import BaseStepExecutor, StepRuntime
from .registry import register_step_executor

logger = logging.getLogger(__name__)

_NUMERIC_OPERATORS = {
    "greater_than": lambda a, b: a > b,
    "less_than": lambda a, b: a < b,
    "greater_than_or_equal": lambda a, b: a >= b,
    "less_than_or_equal": lambda a, b: a <= b,
}

_STRING_OPERATORS = {
    "contains": lambda a, b: b in a,
    "not_contains": lambda a, b: b not in a,
    "starts_with": lambda a, b: a.startswith(b),
    "ends_with": lambda a, b: a.endswith(b),
}

COMPARISON_OPERATORS = (
    "equals", "not_equals", *_NUMERIC_OPERATORS, *_STRING_OPERATORS, "regex", "in", "not_in",
)


def to_number(value: Any) -> float:
    """Numeric coercion; anything unconvertible becomes NaN."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value.strip())
        except ValueError:
            return math.nan
    return math.nan


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without cross-type coercion (True never equals 1, "5" never equals 5)."""
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    numeric = (int, float)
    if isinstance(left, numeric) and isinstance(right, numeric):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def compare(left: Any, operator: str, right: Any = None) -> bool:
    """Apply a comparison operator. Unknown operators are false."""
    if operator == "equals":
        return strict_equals(left, right)
    if operator == "not_equals":
        return not strict_equals(left, right)
    if operator in _NUMERIC_OPERATORS:
        # NaN makes every comparison false
        return _NUMERIC_OPERATORS[operator](to_number(left), to_number(right))
    if operator in _STRING_OPERATORS:
        return _STRING_OPERATORS[operator](to_text(left), to_text(right))
    if operator == "regex":
        try:
            return re.search(to_text(right), to_text(left)) is not None
        except re.error as e:
            logger.warning(f"Invalid regex pattern {right!r}: {e}")
            return False
    if operator in ("in", "not_in"):
        try:
            found = right is not None and left in right
        except TypeError:
            found = False
        return found if operator == "in" else not found
    logger.warning(f"Unknown comparison operator: {operator}")
    return False


# ---------------------------------------------------------------------------
# Custom predicates
# ---------------------------------------------------------------------------

_WEEKDAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def _now(config: Mapping[str, Any]) -> datetime:
    tz = config.get("timezone")
    return datetime.now(ZoneInfo(tz)) if tz else datetime.now()


def _as_datetime(value: Any, config: Mapping[str, Any]) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, dt_time())
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value)
    return _now(config)


def _is_empty(left: Any, right: Any, config: Mapping[str, Any]) -> bool:
    if left is None:
        return True
    try:
        return len(left) == 0
    except TypeError:
        return False


def _between(left: Any, right: Any, config: Mapping[str, Any]) -> bool:
    if isinstance(right, (list, tuple)) and len(right) == 2:
        low, high = right
    else:
        low, high = config.get("min"), config.get("max")
    value = to_number(left)
    if low is not None and not value >= to_number(low):
        return False
    if high is not None and not value <= to_number(high):
        return False
    return not math.isnan(value)


def _one_of(left: Any, right: Any, config: Mapping[str, Any]) -> bool:
    options = right if isinstance(right, (list, tuple, set)) else config.get("values") or []
    return any(strict_equals(left, option) for option in options)


def _weekday(left: Any, right: Any, config: Mapping[str, Any]) -> bool:
    days = right if isinstance(right, (list, tuple)) else config.get("days") or []
    current = _as_datetime(left, config).weekday()
    for day in days:
        if isinstance(day, int) and day == current:
            return True
        if isinstance(day, str) and day[:3].lower() == _WEEKDAYS[current]:
            return True
    return False


def _time_window(left: Any, right: Any, config: Mapping[str, Any]) -> bool:
    start = dt_time.fromisoformat(config["start"])
    end = dt_time.fromisoformat(config["end"])
    current = _as_datetime(left, config).time().replace(tzinfo=None)
    if start <= end:
        return start <= current <= end
    # Window wraps past midnight, e.g. 22:00-06:00
    return current >= start or current <= end


CUSTOM_PREDICATES: Dict[str, Callable[[Any, Any, Mapping[str, Any]], bool]] = {
    "is_empty": _is_empty,
    "not_empty": lambda left, right, config: not _is_empty(left, right, config),
    "between": _between,
    "one_of": _one_of,
    "weekday": _weekday,
    "time_window": _time_window,
}


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def _coerce_condition(raw: Union[Condition, Mapping[str, Any], str]) -> Condition:
    if isinstance(raw, Condition):
        return raw
    if isinstance(raw, str):
        return Condition(type="expression", left={"type": "expression", "value": raw})
    return Condition.model_validate(raw)


def evaluate_condition(
    raw: Union[Condition, Mapping[str, Any], str],
    resolver: InputResolver,
    context: ExecutionContext,
    extra: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Evaluate a structured condition (or a bare expression string)."""
    try:
        condition = _coerce_condition(raw)

        if condition.type == "expression":
            if condition.left is None:
                return False
            return bool(safe_eval(condition.left.value, resolver.namespace(context, extra)))

        left = resolver.resolve(condition.left, context, extra) if condition.left else None

        if condition.type == "existence":
            return left is not None

        right = resolver.resolve(condition.right, context, extra) if condition.right else None

        if condition.type == "comparison":
            return compare(left, condition.operator, right)

        if condition.type == "custom":
            name = condition.config.get("predicate") or condition.operator
            predicate = CUSTOM_PREDICATES.get(name)
            if predicate is None:
                logger.warning(f"Unknown custom predicate: {name}")
                return False
            return bool(predicate(left, right, condition.config))

        return False
    except (WorkflowError, PydanticValidationError, ValueError, TypeError, KeyError) as e:
        logger.error(f"Condition evaluation failed: {e}")
        return False


@register_step_executor(
    step_type="condition",
    display_name="Condition",
    description="Evaluates a structured condition (or an AND/OR group)",
)
class ConditionExecutor(BaseStepExecutor):
    """Returns ``{"result": bool, "condition": ...}``.

    With ``config.failOnFalse`` a false result raises ConditionNotMet so the
    Scheduler routes to the step's onFailure edges.
    """

    async def execute(self, step: Step, inputs: Dict[str, Any], runtime: StepRuntime) -> Any:
        extra = {"inputs": inputs}
        config = step.config

        if "conditions" in config:
            combine = str(config.get("combine", "AND")).upper()
            conditions = list(config.get("conditions") or [])
            outcomes = (
                evaluate_condition(c, runtime.resolver, runtime.context, extra) for c in conditions
            )
            result = any(outcomes) if combine == "OR" else all(outcomes)
            described: Any = {"combine": combine, "conditions": conditions}
        else:
            result = evaluate_condition(config.get("condition"), runtime.resolver, runtime.context, extra)
            described = config.get("condition")

        logger.debug(f"Step {step.id}: condition evaluated to {result}")

        if not result and config.get("failOnFalse"):
            raise ConditionNotMet(
                f"Condition of step '{step.id}' evaluated to false",
                step_id=step.id,
                details={"result": False},
            )
        return {"result": result, "condition": described}

    def validate_config(self, step: Step) -> List[Dict[str, str]]:
        errors = super().validate_config(step)
        config = step.config
        if "conditions" in config:
            if str(config.get("combine", "AND")).upper() not in ("AND", "OR"):
                errors.append({"field": "combine", "error": "combine must be AND or OR"})
            raw_conditions = config.get("conditions") or []
            if not raw_conditions:
                errors.append({"field": "conditions", "error": "At least one condition is required"})
        elif config.get("condition") is None:
            errors.append({"field": "condition", "error": "Required field 'condition' is missing"})
            return errors
        else:
            raw_conditions = [config["condition"]]

        for raw in raw_conditions:
            try:
                _coerce_condition(raw)
            except PydanticValidationError as e:
                errors.append({"field": "condition", "error": f"Invalid condition: {e.error_count()} error(s)"})
        return errors
