"""Structured error taxonomy for the workflow engine.

Every error carries a stable code, a message, and contextual detail
(step id, attempt count) so callers can build user-facing messages
without parsing strings.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""

    code = "WORKFLOW_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        step_id: Optional[str] = None,
        attempt: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.step_id = step_id
        self.attempt = attempt
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.step_id is not None:
            data["step_id"] = self.step_id
        if self.attempt is not None:
            data["attempt"] = self.attempt
        if self.details:
            data["details"] = self.details
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r}, step_id={self.step_id!r})"


class ValidationError(WorkflowError):
    """Malformed document or flow; rejected before execution starts."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, issues: Optional[List[Any]] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.issues = list(issues or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.issues:
            data["issues"] = [
                issue.to_dict() if hasattr(issue, "to_dict") else issue
                for issue in self.issues
            ]
        return data


class CircularDependency(WorkflowError):
    """A dependency cycle was found among steps or canvas nodes."""

    code = "CIRCULAR_DEPENDENCY"

    def __init__(self, node_id: str, cycle: Optional[List[str]] = None, **kwargs: Any):
        cycle = list(cycle or [])
        path = " -> ".join(cycle) if cycle else node_id
        kwargs.setdefault("details", {"cycle": cycle})
        super().__init__(f"Circular dependency detected at '{node_id}': {path}", **kwargs)
        self.node_id = node_id
        self.cycle = cycle
        if self.step_id is None:
            self.step_id = node_id


class ComponentNotFound(WorkflowError):
    """An action step referenced a component that is not registered."""

    code = "COMPONENT_NOT_FOUND"

    def __init__(self, component_id: Optional[str], **kwargs: Any):
        kwargs.setdefault("details", {"component_id": component_id})
        super().__init__(f"Component not found: {component_id}", **kwargs)
        self.component_id = component_id


class StepExecutionError(WorkflowError):
    """Wraps the underlying failure of an executor; subject to retry."""

    code = "STEP_EXECUTION_ERROR"
    retryable = True

    def __init__(self, message: str, *, retryable: Optional[bool] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        if retryable is not None:
            self.retryable = retryable


class StepTimeout(StepExecutionError):
    """A single attempt exceeded the step timeout."""

    code = "STEP_TIMEOUT"


class SandboxError(StepExecutionError):
    """A custom step runner rejected or failed to run the supplied code."""

    code = "SANDBOX_ERROR"
    retryable = False


class ConditionNotMet(StepExecutionError):
    """A condition step configured with failOnFalse evaluated to false."""

    code = "CONDITION_NOT_MET"
    retryable = False


class CircuitOpen(WorkflowError):
    """Fast failure: the step's circuit breaker is open."""

    code = "CIRCUIT_OPEN"


class ExpressionError(WorkflowError):
    """Raised when expression evaluation fails."""

    code = "EXPRESSION_ERROR"


class ResolutionError(WorkflowError):
    """A step input could not be resolved from the execution context."""

    code = "RESOLUTION_ERROR"


class TriggerRejected(WorkflowError):
    """The caller input did not satisfy the flow's trigger."""

    code = "TRIGGER_REJECTED"


class RunCancelled(WorkflowError):
    """The run was cancelled by its caller."""

    code = "RUN_CANCELLED"


class RunTimeout(RunCancelled):
    """The run exceeded the document-level timeout."""

    code = "RUN_TIMEOUT"


class AuthenticationError(WorkflowError):
    """Authentication headers could not be produced for a system."""

    code = "AUTH_ERROR"
