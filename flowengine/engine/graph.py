"""Dependency graph shared by the Scheduler, validation and the Canvas Compiler.

One implementation builds edges, detects cycles and returns either a valid
order or the offending cycle. The walk is an iterative depth-first search
with an explicit ``visiting`` set; nodes are visited in insertion order and
dependencies in declaration order, so results are deterministic.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import CircularDependency
from ..models import Flow

logger = logging.getLogger(__name__)

_DONE = object()


class DependencyGraph:
    """Directed graph where an edge ``node -> depends_on`` means node runs after depends_on."""

    def __init__(self, nodes: Optional[Iterable[str]] = None):
        self._deps: Dict[str, List[str]] = {}
        for node in nodes or ():
            self.add_node(node)

    def __contains__(self, node: str) -> bool:
        return node in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    @property
    def nodes(self) -> List[str]:
        return list(self._deps)

    def add_node(self, node: str) -> None:
        self._deps.setdefault(node, [])

    def add_dependency(self, node: str, depends_on: str) -> None:
        """Record that ``node`` depends on ``depends_on`` (both added if missing)."""
        self.add_node(node)
        self.add_node(depends_on)
        if depends_on not in self._deps[node]:
            self._deps[node].append(depends_on)

    def dependencies(self, node: str) -> List[str]:
        return list(self._deps.get(node, ()))

    def dependents(self, node: str) -> List[str]:
        return [other for other, deps in self._deps.items() if node in deps]

    def _walk(self) -> Tuple[List[str], Optional[List[str]]]:
        """Post-order DFS. Returns (order, cycle); cycle is None for a DAG."""
        order: List[str] = []
        done: set = set()

        for root in self._deps:
            if root in done:
                continue
            path: List[str] = [root]
            visiting = {root}
            stack = [iter(self._deps[root])]

            while stack:
                dep = next(stack[-1], _DONE)
                if dep is _DONE:
                    stack.pop()
                    node = path.pop()
                    visiting.discard(node)
                    done.add(node)
                    order.append(node)
                    continue
                if dep in done:
                    continue
                if dep in visiting:
                    start = path.index(dep)
                    return order, path[start:] + [dep]
                path.append(dep)
                visiting.add(dep)
                stack.append(iter(self._deps[dep]))

        return order, None

    def find_cycle(self) -> Optional[List[str]]:
        """Return a cycle path (last element equals the first), or None."""
        _, cycle = self._walk()
        return cycle

    def topological_order(self) -> List[str]:
        """Return nodes ordered so every node follows its dependencies.

        Raises:
            CircularDependency: If the graph contains a cycle
        """
        order, cycle = self._walk()
        if cycle is not None:
            logger.error(f"Circular dependency detected: {' -> '.join(cycle)}")
            raise CircularDependency(cycle[0], cycle)
        return order


def build_flow_graph(flow: Flow) -> DependencyGraph:
    """Build the step graph induced by step inputs and onSuccess/onFailure edges.

    References to unknown steps are left out; validation reports them.
    """
    graph = DependencyGraph(step.id for step in flow.steps)
    step_ids = set(graph.nodes)

    for step in flow.steps:
        for dep in step.dependencies():
            if dep in step_ids:
                graph.add_dependency(step.id, dep)
        for target in [*step.on_success, *step.on_failure]:
            if target in step_ids:
                graph.add_dependency(target, step.id)

    return graph
