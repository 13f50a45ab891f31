"""Component Library - capabilities that action steps invoke by id.

One library instance is injected per Scheduler. It is read-mostly and safe
to share between concurrently running steps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..errors import ComponentNotFound

logger = logging.getLogger(__name__)

PortType = Literal["string", "number", "boolean", "object", "array", "any"]

ComponentCallable = Callable[[Dict[str, Any], Dict[str, Any]], Union[Awaitable[Any], Any]]


@dataclass
class ComponentPort:
    """Typed input or output of a component."""

    name: str
    type: PortType = "any"
    required: bool = False
    description: str = ""


@dataclass
class Component:
    """A registered capability.

    Attributes:
        id: Unique component id (referenced by ``config.componentId``)
        name: Display name
        category: identity / productivity / communication / cloud / data / governance / ...
        execute: ``(inputs, config) -> outputs``; sync callables run in a worker thread
        schema: Optional pydantic model the resolved inputs must satisfy
    """

    id: str
    name: str
    category: str
    execute: ComponentCallable
    version: str = "1.0.0"
    description: str = ""
    inputs: List[ComponentPort] = field(default_factory=list)
    outputs: List[ComponentPort] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=dict)
    schema: Optional[Type[BaseModel]] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("component id cannot be empty")
        if not callable(self.execute):
            raise ValueError(f"component {self.id}: execute must be callable")

    def input_names(self) -> List[str]:
        return [port.name for port in self.inputs]

    def output_names(self) -> List[str]:
        return [port.name for port in self.outputs]


class ComponentLibrary:
    """Registry of components keyed by id."""

    def __init__(self, components: Optional[List[Component]] = None):
        self._components: Dict[str, Component] = {}
        for component in components or []:
            self.register(component)

    def __contains__(self, component_id: str) -> bool:
        return component_id in self._components

    def __len__(self) -> int:
        return len(self._components)

    def register(self, component: Component) -> None:
        if component.id in self._components:
            logger.warning(f"Replacing registered component: {component.id}")
        self._components[component.id] = component
        logger.info(
            f"Registered component: {component.id} "
            f"(category={component.category}, version={component.version})"
        )

    def unregister(self, component_id: str) -> bool:
        return self._components.pop(component_id, None) is not None

    def get(self, component_id: str) -> Optional[Component]:
        return self._components.get(component_id)

    def require(self, component_id: str) -> Component:
        """Get a component or raise ComponentNotFound."""
        component = self._components.get(component_id)
        if component is None:
            raise ComponentNotFound(component_id)
        return component

    def list(self, category: Optional[str] = None) -> List[Component]:
        components = list(self._components.values())
        if category is None:
            return components
        return [c for c in components if c.category == category]

    def validate_component_usage(self, component_id: str, inputs: Dict[str, Any]) -> bool:
        """Check inputs against the component's required ports and schema."""
        component = self._components.get(component_id)
        if component is None:
            return False

        missing = [p.name for p in component.inputs if p.required and inputs.get(p.name) is None]
        if missing:
            logger.error(f"Component {component_id} missing required inputs: {missing}")
            return False

        if component.schema is not None:
            try:
                component.schema.model_validate(inputs)
            except PydanticValidationError as e:
                logger.error(f"Component validation failed for {component_id}: {e}")
                return False
        return True
