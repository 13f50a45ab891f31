"""Expression/Variable Resolver.

Materializes a step input's value from its declared kind against the
execution context. Resolution only reads state that already exists; the
Scheduler guarantees upstream steps ran first.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from ..errors import ExpressionError, ResolutionError
from ..models import ExecutionContext, StepInput, WorkflowDocument
from ..utils import get_path
from .safe_eval import safe_eval

logger = logging.getLogger(__name__)


class InputResolver:
    """Resolves StepInput values (literal, variable, step, resource, expression)."""

    def __init__(self, document: Optional[WorkflowDocument] = None):
        self.document = document

    def namespace(
        self, context: ExecutionContext, extra: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        """Build the read-only expression namespace for a context."""
        names = context.namespace()
        if extra:
            names.update(extra)
        return names

    def resolve(
        self,
        step_input: StepInput,
        context: ExecutionContext,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Resolve one input.

        Args:
            step_input: Declared input
            context: Current execution context
            extra: Additional expression names (e.g. ``item``, ``index``, ``inputs``)

        Returns:
            The resolved value with the optional ``path`` applied

        Raises:
            ResolutionError: Step result missing or resource unknown
            ExpressionError: Expression failed to evaluate
        """
        kind = step_input.type
        value = step_input.value

        if kind == "literal":
            resolved = value
        elif kind == "variable":
            resolved = self._resolve_variable(value, context)
        elif kind == "step":
            resolved = self._resolve_step(value, context)
        elif kind == "resource":
            resolved = self._resolve_resource(value)
        elif kind == "expression":
            try:
                resolved = safe_eval(value, self.namespace(context, extra))
            except ExpressionError as e:
                logger.debug(f"Expression '{value}' failed: {e.message}")
                raise
        else:
            raise ResolutionError(f"Unknown input type: {kind}")

        if step_input.path:
            return get_path(resolved, step_input.path)
        return resolved

    def resolve_all(
        self,
        inputs: Mapping[str, StepInput],
        context: ExecutionContext,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Resolve a whole input map, preserving declaration order."""
        return {name: self.resolve(step_input, context, extra) for name, step_input in inputs.items()}

    def _resolve_variable(self, name: Any, context: ExecutionContext) -> Any:
        if not isinstance(name, str):
            return None
        if name in context.variables:
            return context.variables[name]
        # Dotted names reach into structured variables: "user.email"
        if "." in name:
            return get_path(context.variables, name)
        return None

    def _resolve_step(self, step_id: Any, context: ExecutionContext) -> Any:
        if step_id in context.step_results:
            return context.step_results[step_id]
        if step_id in context.failed_steps:
            # Recovered failure: the step ran but produced no result
            return None
        raise ResolutionError(
            f"Result of step '{step_id}' is not available",
            details={"referenced_step": step_id},
        )

    def _resolve_resource(self, resource_id: Any) -> Any:
        if self.document is None:
            raise ResolutionError(
                f"Resource '{resource_id}' cannot be resolved without a document",
                details={"resource_id": resource_id},
            )
        resource = self.document.get_resource(resource_id)
        if resource is None:
            raise ResolutionError(
                f"Resource not found: {resource_id}",
                details={"resource_id": resource_id},
            )
        return resource.model_dump(mode="json", by_alias=True)
