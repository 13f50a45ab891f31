"""Step Executor Registry

Maps a step type to its executor class. Executors register themselves with
the ``register_step_executor`` decorator; the Scheduler instantiates them
through ``create_executor`` and accepts per-instance overrides.

Key Components:
- StepExecutorDefinition: Metadata for a step type
- register_step_executor: Decorator for registering executors
- create_executor: Factory function for executor instantiation
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StepExecutorDefinition:
    """Metadata definition for a step type.

    Attributes:
        step_type: Step type handled (e.g. "action")
        display_name: Human-readable name
        description: Brief description of the executor
        required_config: Config keys that must be present
    """

    step_type: str
    display_name: str
    description: str
    required_config: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.step_type:
            raise ValueError("step_type cannot be empty")
        if not self.display_name:
            raise ValueError("display_name cannot be empty")


# Global registry of built-in executors
STEP_EXECUTOR_REGISTRY: Dict[str, StepExecutorDefinition] = {}
STEP_EXECUTORS: Dict[str, Type[Any]] = {}


def register_step_executor(
    step_type: str,
    display_name: str,
    description: str,
    required_config: Optional[List[str]] = None,
) -> Callable[[Type[T]], Type[T]]:
    """Decorator to register a step executor class.

    Example:
        @register_step_executor(
            step_type="wait",
            display_name="Wait",
            description="Suspends the flow for a duration",
        )
        class WaitExecutor(BaseStepExecutor):
            async def execute(self, step, inputs, runtime):
                ...
    """

    def decorator(cls: Type[T]) -> Type[T]:
        definition = StepExecutorDefinition(
            step_type=step_type,
            display_name=display_name,
            description=description,
            required_config=list(required_config or []),
        )
        STEP_EXECUTOR_REGISTRY[step_type] = definition
        STEP_EXECUTORS[step_type] = cls
        cls.step_type = step_type

        logger.debug(f"Registered step executor: {step_type} ({display_name})")

        return cls

    return decorator


def create_executor(step_type: str) -> Any:
    """Factory function to create an executor instance.

    Raises:
        ValueError: If step_type is not registered
    """
    if step_type not in STEP_EXECUTORS:
        available_types = list(STEP_EXECUTORS.keys())
        raise ValueError(
            f"Unknown step type: {step_type}. "
            f"Available types: {available_types}"
        )
    return STEP_EXECUTORS[step_type]()


def get_executor_definition(step_type: str) -> Optional[StepExecutorDefinition]:
    return STEP_EXECUTOR_REGISTRY.get(step_type)


def list_step_types() -> List[StepExecutorDefinition]:
    """List all registered step types."""
    return list(STEP_EXECUTOR_REGISTRY.values())


def is_step_type_registered(step_type: str) -> bool:
    return step_type in STEP_EXECUTOR_REGISTRY
