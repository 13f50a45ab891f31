"""Canvas validation: structural checks run before compilation."""

from __future__ import annotations

import logging
from collections import Counter

from ..engine.graph import DependencyGraph
from ..engine.validation import ValidationIssue, ValidationResult
from .models import Canvas

logger = logging.getLogger(__name__)


def validate_canvas(canvas: Canvas) -> ValidationResult:
    """Validate a canvas.

    Checks:
    - Unique node ids and componentId on component nodes
    - Port presence (triggers need no inputs, resources need no outputs)
    - Connection endpoints exist and run from an output to an input port
    - No cycles between component nodes

    Returns:
        ValidationResult containing errors/warnings
    """
    result = ValidationResult()

    for node_id, count in Counter(node.id for node in canvas.nodes).items():
        if count > 1:
            result.add(ValidationIssue(
                code="DUPLICATE_NODE_ID",
                message=f"Node id '{node_id}' is used {count} times",
                step_ids=[node_id],
            ))

    for node in canvas.nodes:
        if node.type == "component" and not node.component_id:
            result.add(ValidationIssue(
                code="MISSING_COMPONENT_ID",
                message=f"Component node {node.id} missing componentId",
                step_ids=[node.id],
            ))
        if not node.ports_of("input") and node.type not in ("trigger", "resource"):
            result.add(ValidationIssue(
                code="MISSING_INPUT_PORTS",
                message=f"Node {node.id} has no input ports",
                severity="warning",
                step_ids=[node.id],
            ))
        if not node.ports_of("output") and node.type != "resource":
            result.add(ValidationIssue(
                code="MISSING_OUTPUT_PORTS",
                message=f"Node {node.id} has no output ports",
                severity="warning",
                step_ids=[node.id],
            ))

    for connection in canvas.connections:
        source = canvas.get_node(connection.source_node_id)
        target = canvas.get_node(connection.target_node_id)
        if source is None or target is None:
            missing = connection.source_node_id if source is None else connection.target_node_id
            result.add(ValidationIssue(
                code="DANGLING_CONNECTION",
                message=f"Connection {connection.id} references non-existent node '{missing}'",
                context={"connection_id": connection.id, "node_id": missing},
            ))
            continue

        source_port = source.get_port(connection.source_port_id)
        if source_port is None or source_port.type != "output":
            result.add(ValidationIssue(
                code="INVALID_SOURCE_PORT",
                message=f"Invalid source port in connection {connection.id}",
                step_ids=[source.id],
                context={"connection_id": connection.id, "port_id": connection.source_port_id},
            ))
        target_port = target.get_port(connection.target_port_id)
        if target_port is None or target_port.type != "input":
            result.add(ValidationIssue(
                code="INVALID_TARGET_PORT",
                message=f"Invalid target port in connection {connection.id}",
                step_ids=[target.id],
                context={"connection_id": connection.id, "port_id": connection.target_port_id},
            ))

    component_ids = [node.id for node in canvas.nodes if node.type == "component"]
    graph = DependencyGraph(component_ids)
    for connection in canvas.connections:
        if connection.source_node_id in graph and connection.target_node_id in graph:
            graph.add_dependency(connection.target_node_id, connection.source_node_id)
    cycle = graph.find_cycle()
    if cycle:
        result.add(ValidationIssue(
            code="CIRCULAR_DEPENDENCY",
            message=f"Circular dependency detected: {' -> '.join(cycle)}",
            step_ids=cycle[:-1],
            context={"cycle_path": cycle},
        ))

    if not result.valid:
        logger.warning(f"Canvas {canvas.id} failed validation with {len(result.errors)} error(s)")
    return result
