"""Flow and document validation.

Validation runs before any step executes. It collects every problem it can
find instead of stopping at the first one; ``raise_for_issues`` turns the
result into the error the Scheduler surfaces.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..errors import CircularDependency, ValidationError
from ..models import Flow, Step, StepInput, WorkflowDocument, iter_condition_inputs
from .graph import build_flow_graph
from .safe_eval import validate_expression

logger = logging.getLogger(__name__)


class ValidationIssue:
    """A single validation problem.

    Attributes:
        code: Issue code (e.g. DANGLING_STEP_REFERENCE)
        message: Human-readable message
        severity: "error" or "warning"
        step_ids: Affected step (or canvas node) ids
        context: Additional detail
    """

    def __init__(
        self,
        code: str,
        message: str,
        severity: str = "error",
        step_ids: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.severity = severity
        self.step_ids = list(step_ids or [])
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "step_ids": self.step_ids,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"ValidationIssue({self.code!r}, {self.message!r})"


class ValidationResult:
    """Validation result.

    Attributes:
        valid: Whether no error-severity issue was found
        errors: List of error issues
        warnings: List of warning issues
    """

    def __init__(self, errors: Optional[List[ValidationIssue]] = None, warnings: Optional[List[ValidationIssue]] = None):
        self.errors = list(errors or [])
        self.warnings = list(warnings or [])

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def issues(self) -> List[ValidationIssue]:
        return [*self.errors, *self.warnings]

    def add(self, issue: ValidationIssue) -> None:
        if issue.severity == "warning":
            self.warnings.append(issue)
        else:
            self.errors.append(issue)

    def extend(self, other: "ValidationResult") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def codes(self) -> List[str]:
        return [issue.code for issue in self.issues]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def _all_steps(flow: Flow) -> List[Step]:
    """Top-level steps followed by their inline sub-steps (depth-first)."""
    collected: List[Step] = []

    def visit(steps: Iterable[Step]) -> None:
        for step in steps:
            collected.append(step)
            visit(step.inline_steps())

    visit(flow.steps)
    return collected


def _expressions(step: Step) -> List[str]:
    """Expression strings declared by a step (inputs, conditions, transforms)."""
    found = [i.value for i in step.inputs.values() if i.type == "expression"]
    for raw in iter_condition_inputs(step.config):
        if raw.get("type") == "expression":
            found.append(raw.get("value"))

    conditions = [step.config.get("condition"), *(step.config.get("conditions") or [])]
    transform = step.config.get("transform")
    if isinstance(transform, Mapping):
        transform_config = transform.get("config") or {}
        if transform.get("type") == "expression":
            found.append(transform_config.get("expression"))
        if isinstance(transform_config.get("condition"), str):
            found.append(transform_config["condition"])
        else:
            conditions.append(transform_config.get("condition"))

    for condition in conditions:
        if isinstance(condition, Mapping) and condition.get("type") == "expression":
            left = condition.get("left")
            found.append(left.get("value") if isinstance(left, Mapping) else left)

    unique: List[str] = []
    for expression in found:
        if expression not in unique:
            unique.append(expression)
    return unique


def _executor_issues(step: Step, executors: Optional[Mapping[str, Any]]) -> List[ValidationIssue]:
    # Imported here: the steps package depends on engine modules
    from ..steps.registry import create_executor, is_step_type_registered

    if executors and step.type in executors:
        executor = executors[step.type]
        if isinstance(executor, type):
            executor = executor()
    elif is_step_type_registered(step.type):
        executor = create_executor(step.type)
    else:
        return [ValidationIssue(
            code="INVALID_STEP_TYPE",
            message=f"Step {step.id} has unregistered type '{step.type}'",
            step_ids=[step.id],
            context={"step_type": step.type},
        )]

    config_errors = executor.validate_config(step)
    if not config_errors:
        return []
    return [ValidationIssue(
        code="INVALID_STEP_CONFIG",
        message=f"Step {step.id} has invalid configuration",
        step_ids=[step.id],
        context={"step_type": step.type, "validation_errors": config_errors},
    )]


def validate_flow(
    flow: Flow,
    document: Optional[WorkflowDocument] = None,
    executors: Optional[Mapping[str, Any]] = None,
) -> ValidationResult:
    """Validate a flow before execution.

    This function performs comprehensive validation including:
    - Duplicate step ids (inline sub-steps included)
    - Dangling step, resource and trigger references
    - Expression syntax
    - Per-executor configuration
    - Circular dependencies

    Args:
        flow: Flow to validate
        document: Owning document, used for resource and trigger lookups
        executors: Optional executor overrides keyed by step type

    Returns:
        ValidationResult containing errors/warnings
    """
    result = ValidationResult()
    steps = _all_steps(flow)

    # 1. Duplicate ids
    counts = Counter(step.id for step in steps)
    for step_id, count in counts.items():
        if count > 1:
            result.add(ValidationIssue(
                code="DUPLICATE_STEP_ID",
                message=f"Step id '{step_id}' is declared {count} times",
                step_ids=[step_id],
            ))

    top_level_ids = {step.id for step in flow.steps}

    for step in flow.steps:
        # 2. Dangling step references (inputs, conditions, inline sub-steps)
        for dep in step.dependencies():
            if dep not in top_level_ids:
                result.add(ValidationIssue(
                    code="DANGLING_STEP_REFERENCE",
                    message=f"Step {step.id} references unknown step '{dep}'",
                    step_ids=[step.id],
                    context={"referenced_step": dep},
                ))
            elif dep == step.id:
                result.add(ValidationIssue(
                    code="CIRCULAR_DEPENDENCY",
                    message=f"Step {step.id} depends on itself",
                    step_ids=[step.id],
                    context={"cycle_path": [step.id, step.id]},
                ))

        for edge_kind, targets in (("onSuccess", step.on_success), ("onFailure", step.on_failure)):
            for target in targets:
                if target not in top_level_ids:
                    result.add(ValidationIssue(
                        code="DANGLING_EDGE",
                        message=f"Step {step.id} {edge_kind} targets unknown step '{target}'",
                        step_ids=[step.id],
                        context={"edge": edge_kind, "target": target},
                    ))

        if step.type == "parallel":
            branch_ids = {branch.id for branch in step.inline_steps()}
            for branch in step.inline_steps():
                for dep in branch.dependencies():
                    if dep in branch_ids:
                        result.add(ValidationIssue(
                            code="PARALLEL_BRANCH_REFERENCE",
                            message=f"Parallel branch {branch.id} reads sibling branch '{dep}'",
                            step_ids=[step.id, branch.id],
                            context={"referenced_step": dep},
                        ))

    for step in steps:
        # 3. Resource references
        for name, step_input in step.inputs.items():
            if step_input.type != "resource":
                continue
            if document is None:
                result.add(ValidationIssue(
                    code="RESOURCE_UNAVAILABLE",
                    message=f"Step {step.id} input '{name}' references resource "
                            f"'{step_input.value}' but no document was supplied",
                    step_ids=[step.id],
                    context={"resource_id": step_input.value},
                ))
            elif document.get_resource(step_input.value) is None:
                result.add(ValidationIssue(
                    code="DANGLING_RESOURCE_REFERENCE",
                    message=f"Step {step.id} input '{name}' references unknown resource '{step_input.value}'",
                    step_ids=[step.id],
                    context={"resource_id": step_input.value},
                ))

        # 4. Expressions
        for expression in _expressions(step):
            for err in validate_expression(expression):
                result.add(ValidationIssue(
                    code="INVALID_EXPRESSION",
                    message=f"Step {step.id} has an invalid expression: {err}",
                    step_ids=[step.id],
                    context={"expression": expression},
                ))

        # 5. Executor configuration
        for issue in _executor_issues(step, executors):
            result.add(issue)

    for name, output in flow.outputs.items():
        _check_flow_output(result, name, output, top_level_ids)

    # 6. Trigger
    if document is not None and flow.trigger_id and document.get_trigger(flow.trigger_id) is None:
        result.add(ValidationIssue(
            code="UNKNOWN_TRIGGER",
            message=f"Flow {flow.id} references unknown trigger '{flow.trigger_id}'",
            context={"trigger_id": flow.trigger_id},
        ))

    # 7. Cycles
    if "CIRCULAR_DEPENDENCY" not in result.codes():
        cycle = build_flow_graph(flow).find_cycle()
        if cycle:
            cycle_str = " -> ".join(cycle)
            result.add(ValidationIssue(
                code="CIRCULAR_DEPENDENCY",
                message=f"Circular dependency detected: {cycle_str}",
                step_ids=cycle[:-1],
                context={"cycle_path": cycle},
            ))

    if not result.valid:
        logger.warning(f"Flow {flow.id} failed validation with {len(result.errors)} error(s)")
    return result


def _check_flow_output(result: ValidationResult, name: str, output: StepInput, step_ids: set) -> None:
    if output.type == "step" and output.value not in step_ids:
        result.add(ValidationIssue(
            code="DANGLING_OUTPUT_REFERENCE",
            message=f"Flow output '{name}' references unknown step '{output.value}'",
            context={"output": name, "referenced_step": output.value},
        ))
    elif output.type == "expression":
        for err in validate_expression(output.value):
            result.add(ValidationIssue(
                code="INVALID_EXPRESSION",
                message=f"Flow output '{name}' has an invalid expression: {err}",
                context={"output": name, "expression": output.value},
            ))


def validate_document(document: WorkflowDocument, executors: Optional[Mapping[str, Any]] = None) -> ValidationResult:
    """Validate every flow in a document plus document-wide invariants."""
    result = ValidationResult()

    counts = Counter(flow.id for flow in document.flows)
    for flow_id, count in counts.items():
        if count > 1:
            result.add(ValidationIssue(
                code="DUPLICATE_FLOW_ID",
                message=f"Flow id '{flow_id}' is declared {count} times",
                context={"flow_id": flow_id},
            ))

    for flow in document.flows:
        result.extend(validate_flow(flow, document, executors))

    return result


def raise_for_issues(result: ValidationResult) -> None:
    """Raise the error matching a failed validation result.

    Raises:
        CircularDependency: If a cycle was reported
        ValidationError: For any other error issue
    """
    if result.valid:
        return
    for issue in result.errors:
        if issue.code == "CIRCULAR_DEPENDENCY":
            cycle = issue.context.get("cycle_path") or issue.step_ids
            raise CircularDependency(issue.step_ids[0], cycle)
    summary = "; ".join(issue.message for issue in result.errors[:3])
    raise ValidationError(
        f"Validation failed with {len(result.errors)} error(s): {summary}",
        issues=result.errors,
    )
