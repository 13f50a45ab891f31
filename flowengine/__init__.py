"""Declarative workflow orchestration engine.

Subpackages:
- engine: Dependency graph, input resolution, retry/circuit-breaker policy and the Scheduler
- steps: Step executor registry and the built-in executors
- components: Component library, authentication manager and HTTP component
- canvas: Canvas and card workflow compilers
"""

# engine first: the scheduler imports the step executors, which use engine modules
from .engine import (
    CancellationToken,
    DependencyGraph,
    RunResult,
    Scheduler,
    ValidationResult,
    run_document,
    run_flow,
    validate_document,
    validate_flow,
)
from .canvas import compile_canvas, compile_cards, validate_canvas
from .components import AuthenticationManager, Component, ComponentLibrary, create_http_component
from .config import EngineConfig
from .logging_config import configure_logging, setup_logger
from .errors import (
    CircuitOpen,
    CircularDependency,
    ComponentNotFound,
    StepExecutionError,
    ValidationError,
    WorkflowError,
)
from .models import ExecutionContext, Flow, Step, WorkflowDocument, dump_document, load_document, load_flow

__version__ = "0.1.0"

__all__ = [
    "AuthenticationManager",
    "CancellationToken",
    "CircuitOpen",
    "CircularDependency",
    "Component",
    "ComponentLibrary",
    "ComponentNotFound",
    "DependencyGraph",
    "EngineConfig",
    "ExecutionContext",
    "Flow",
    "RunResult",
    "Scheduler",
    "Step",
    "StepExecutionError",
    "ValidationError",
    "ValidationResult",
    "WorkflowDocument",
    "WorkflowError",
    "compile_canvas",
    "compile_cards",
    "configure_logging",
    "create_http_component",
    "dump_document",
    "load_document",
    "load_flow",
    "run_document",
    "run_flow",
    "setup_logger",
    "validate_canvas",
    "validate_document",
    "validate_flow",
]
