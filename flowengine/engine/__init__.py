"""Workflow Engine: dependency graph, resolution, policy and scheduling."""

from .cancellation import CancellationToken
from .graph import DependencyGraph, build_flow_graph
from .policy import CircuitBreaker, CircuitBreakerRegistry, RetryPolicy, execute_with_policy
from .resolver import InputResolver
from .safe_eval import safe_eval, validate_expression
from .validation import (
    ValidationIssue,
    ValidationResult,
    raise_for_issues,
    validate_document,
    validate_flow,
)

# Last: the scheduler pulls in the step executors, which use the modules above
from .scheduler import RunResult, Scheduler, StepState, run_document, run_flow

__all__ = [
    "CancellationToken",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "DependencyGraph",
    "InputResolver",
    "RetryPolicy",
    "RunResult",
    "Scheduler",
    "StepState",
    "ValidationIssue",
    "ValidationResult",
    "build_flow_graph",
    "execute_with_policy",
    "raise_for_issues",
    "run_document",
    "run_flow",
    "safe_eval",
    "validate_document",
    "validate_expression",
    "validate_flow",
]
