"""Canvas Compiler - converts a visual canvas into a WorkflowDocument.

Compilation is a pure function of the canvas (and, when given, the
component library): no timestamps or generated ids, so compiling the same
canvas twice gives identical documents.

Pipeline:
1. Partition nodes into resources, triggers and component nodes
2. Build the dependency graph from connections (target depends on source)
3. Topological sort; a cycle raises CircularDependency and no document
   is returned
4. Each component node becomes a step; connected input ports read the
   variable written by the source port, output ports write
   ``<nodeId>_<portName>``
5. Output ports without an outgoing connection become flow outputs
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from ..engine.graph import DependencyGraph
from ..errors import WorkflowError
from ..models import WorkflowDocument, load_document
from .models import Canvas, CanvasNode

if TYPE_CHECKING:
    from ..components.library import Component, ComponentLibrary

logger = logging.getLogger(__name__)

CATEGORY_STEP_TYPES: Dict[str, str] = {
    "identity": "action",
    "productivity": "action",
    "communication": "action",
    "cloud": "action",
    "data": "transform",
    "governance": "condition",
}

DEFAULT_RUN_TIMEOUT_MS = 3600000


def step_type_for_category(category: Optional[str]) -> str:
    """Map a component category to a step type (unknown categories run as custom)."""
    return CATEGORY_STEP_TYPES.get(category or "", "custom")


def port_variable(node_id: str, port_name: str) -> str:
    return f"{node_id}_{port_name}"


class CanvasCompiler:
    """
    Compiles one canvas.

    Args:
        canvas: Canvas to compile
        library: Optional component library; when given, component ports and
            categories come from the library and unknown component ids raise
            ComponentNotFound
    """

    def __init__(self, canvas: Canvas | Dict[str, Any], library: Optional["ComponentLibrary"] = None):
        self.canvas = canvas if isinstance(canvas, Canvas) else Canvas.model_validate(canvas)
        self.library = library

    def compile(self) -> WorkflowDocument:
        canvas = self.canvas
        logger.info(f"Compiling canvas {canvas.id} ({len(canvas.nodes)} nodes)")
        try:
            document = load_document({
                "version": "1.0.0",
                "metadata": {
                    "name": canvas.name,
                    "description": canvas.description,
                    "author": canvas.metadata.author,
                    "tags": ["visual-design", "canvas"],
                    "created": canvas.metadata.created,
                    "modified": canvas.metadata.modified,
                },
                "config": {"timeout": DEFAULT_RUN_TIMEOUT_MS, "environment": {}},
                "resources": self._resources(),
                "triggers": self._triggers(),
                "flows": [self._main_flow()],
                "errorHandlers": [],
            })
        except WorkflowError as e:
            logger.error(f"Canvas compilation failed: canvas={canvas.id}, error={e}")
            raise

        logger.info(
            f"Canvas compilation completed: canvas={canvas.id}, "
            f"steps={len(document.flows[0].steps)}, connections={len(canvas.connections)}"
        )
        return document

    def _nodes(self, node_type: str) -> List[CanvasNode]:
        return [node for node in self.canvas.nodes if node.type == node_type]

    def _resources(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": node.id,
                "type": node.config.get("resourceType", "data"),
                "name": node.label,
                "config": dict(node.config),
            }
            for node in self._nodes("resource")
        ]

    def _triggers(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": node.id,
                "type": node.config.get("triggerType", "manual"),
                "name": node.label,
                "config": dict(node.config),
                "enabled": True,
            }
            for node in self._nodes("trigger")
        ]

    def _main_flow(self) -> Dict[str, Any]:
        component_nodes = self._nodes("component")
        by_id = {node.id: node for node in component_nodes}

        graph = DependencyGraph(by_id)
        for connection in self.canvas.connections:
            if connection.source_node_id in by_id and connection.target_node_id in by_id:
                graph.add_dependency(connection.target_node_id, connection.source_node_id)

        order = graph.topological_order()

        steps = []
        outputs: Dict[str, Dict[str, Any]] = {}
        for node_id in order:
            node = by_id[node_id]
            component = self._component(node)
            steps.append(self._node_to_step(node, component))
            for port_name in self._port_names(node, component, "output"):
                if not self._has_outgoing(node, port_name):
                    name = port_variable(node.id, port_name)
                    outputs[name] = {"type": "variable", "value": name}

        triggers = self._nodes("trigger")
        return {
            "id": f"{self.canvas.id}-flow",
            "name": f"{self.canvas.name} Flow".strip(),
            "description": f"Generated from canvas {self.canvas.id}",
            "triggerId": triggers[0].id if triggers else None,
            "steps": steps,
            "variables": {},
            "outputs": outputs,
        }

    def _component(self, node: CanvasNode) -> Optional["Component"]:
        if self.library is None or not node.component_id:
            return None
        return self.library.require(node.component_id)

    def _port_names(self, node: CanvasNode, component: Optional["Component"], direction: str) -> List[str]:
        if component is not None:
            return component.input_names() if direction == "input" else component.output_names()
        return [port.port_name for port in node.ports_of(direction)]

    def _port_name(self, node_id: str, port_id: str) -> Optional[str]:
        node = self.canvas.get_node(node_id)
        port = node.get_port(port_id) if node else None
        return port.port_name if port else None

    def _incoming(self, node: CanvasNode) -> Dict[str, Tuple[str, str]]:
        """Input port name -> (source node id, source port name)."""
        incoming: Dict[str, Tuple[str, str]] = {}
        for connection in self.canvas.connections:
            if connection.target_node_id != node.id:
                continue
            target_port = self._port_name(node.id, connection.target_port_id)
            source_port = self._port_name(connection.source_node_id, connection.source_port_id)
            if target_port and source_port and target_port not in incoming:
                incoming[target_port] = (connection.source_node_id, source_port)
        return incoming

    def _has_outgoing(self, node: CanvasNode, port_name: str) -> bool:
        return any(
            connection.source_node_id == node.id
            and self._port_name(node.id, connection.source_port_id) == port_name
            for connection in self.canvas.connections
        )

    def _node_to_step(self, node: CanvasNode, component: Optional["Component"]) -> Dict[str, Any]:
        incoming = self._incoming(node)
        configured = node.config.get("inputs") or {}

        inputs: Dict[str, Dict[str, Any]] = {}
        for port_name in self._port_names(node, component, "input"):
            if port_name in incoming:
                source_id, source_port = incoming[port_name]
                inputs[port_name] = {"type": "variable", "value": port_variable(source_id, source_port)}
            elif port_name in configured:
                value = configured[port_name]
                if isinstance(value, dict) and "type" in value:
                    inputs[port_name] = {"type": value["type"], "value": value.get("value")}
                else:
                    inputs[port_name] = {"type": "literal", "value": value}

        outputs = {
            port_name: {"type": "variable", "path": port_variable(node.id, port_name)}
            for port_name in self._port_names(node, component, "output")
        }

        config = {key: value for key, value in node.config.items() if key != "inputs"}
        if node.component_id:
            config = {"componentId": node.component_id, **config}

        category = component.category if component is not None else node.config.get("category")
        return {
            "id": node.id,
            "name": node.label,
            "type": step_type_for_category(category),
            "config": config,
            "inputs": inputs,
            "outputs": outputs,
        }


def compile_canvas(canvas: Canvas | Dict[str, Any], library: Optional["ComponentLibrary"] = None) -> WorkflowDocument:
    """Compile a canvas into a WorkflowDocument.

    Raises:
        CircularDependency: If connections between component nodes form a cycle
        ComponentNotFound: If a library is given and a node's component is missing
        ValidationError: If the generated document does not parse
    """
    return CanvasCompiler(canvas, library).compile()
