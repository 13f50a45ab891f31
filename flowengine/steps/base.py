"""Base step executor and the runtime handed to every execution."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from ..config import EngineConfig
from ..engine.cancellation import CancellationToken
from ..engine.resolver import InputResolver
from ..models import ExecutionContext, Step, WorkflowDocument
from .registry import STEP_EXECUTOR_REGISTRY

if TYPE_CHECKING:
    from ..components.auth import AuthenticationManager
    from ..components.library import ComponentLibrary
    from .custom import CustomStepRunner

logger = logging.getLogger(__name__)

InlineRunner = Callable[[Step, ExecutionContext], Awaitable[Any]]


@dataclass
class StepRuntime:
    """Collaborators available to an executor during one step execution.

    Attributes:
        context: Execution context the step reads and writes (scoped inside loops)
        resolver: Input resolver bound to the run's document
        config: Engine configuration
        run_inline: Runs a nested step (loop body, parallel branch) with the
            full retry/breaker policy and returns its result
    """

    context: ExecutionContext
    resolver: InputResolver
    config: EngineConfig
    run_inline: InlineRunner
    library: Optional["ComponentLibrary"] = None
    auth_manager: Optional["AuthenticationManager"] = None
    custom_runner: Optional["CustomStepRunner"] = None
    cancel_token: Optional[CancellationToken] = None
    document: Optional[WorkflowDocument] = None

    def with_context(self, context: ExecutionContext) -> "StepRuntime":
        return StepRuntime(
            context=context,
            resolver=self.resolver,
            config=self.config,
            run_inline=self.run_inline,
            library=self.library,
            auth_manager=self.auth_manager,
            custom_runner=self.custom_runner,
            cancel_token=self.cancel_token,
            document=self.document,
        )


class BaseStepExecutor(ABC):
    """Abstract base class for step executors.

    Subclasses implement ``execute``; ``validate_config`` checks the
    registered required config keys and can be extended.
    """

    step_type: str = ""

    @abstractmethod
    async def execute(self, step: Step, inputs: Dict[str, Any], runtime: StepRuntime) -> Any:
        """Execute the step with resolved inputs. Must be implemented by subclasses."""

    def validate_config(self, step: Step) -> List[Dict[str, str]]:
        """Default validation implementation.

        Returns:
            List of {"field", "error"} dicts; empty if valid
        """
        errors = []
        definition = STEP_EXECUTOR_REGISTRY.get(self.step_type or step.type)
        if not definition:
            return errors
        for field_name in definition.required_config:
            if step.config.get(field_name) in (None, ""):
                errors.append({
                    "field": field_name,
                    "error": f"Required field '{field_name}' is missing",
                })
        return errors
