"""Step System: executor registry, runtime and the built-in step executors."""

# Import executor modules to auto-register step types
from . import action  # noqa: F401 - registers action
from . import condition  # noqa: F401 - registers condition
from . import transform  # noqa: F401 - registers transform
from . import custom  # noqa: F401 - registers custom
from . import control  # noqa: F401 - registers wait, loop, parallel

from .base import BaseStepExecutor, StepRuntime
from .registry import (
    STEP_EXECUTOR_REGISTRY,
    STEP_EXECUTORS,
    StepExecutorDefinition,
    create_executor,
    get_executor_definition,
    is_step_type_registered,
    list_step_types,
    register_step_executor,
)

__all__ = [
    "STEP_EXECUTOR_REGISTRY",
    "STEP_EXECUTORS",
    "BaseStepExecutor",
    "StepExecutorDefinition",
    "StepRuntime",
    "create_executor",
    "get_executor_definition",
    "is_step_type_registered",
    "list_step_types",
    "register_step_executor",
]
