"""
Resource Graph Resolver.

Builds the dependency graph from declared references and linearises it.

Rules:
- Edges point from a resource to what it references.
- Bootstrap edges are dropped before ordering. A cycle is therefore
  rejected exactly when none of its edges is a bootstrap edge.
- Independent resources keep their declaration order, so the same
  declarations always produce the same plan.

Usage:
    graph = GraphResolver().resolve(resources)
    for resource in graph:          # topological order
        ...
    graph.reverse_order()           # teardown order
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum

from converge.errors import CycleError, DeclarationError
from converge.resources import Resource

logger = logging.getLogger(__name__)


class _Mark(Enum):
    UNVISITED = 0
    ON_STACK = 1
    DONE = 2


@dataclass
class ResourceGraph:
    """Validated dependency graph with a deterministic topological order."""

    resources: dict[str, Resource]
    order: list[str]
    edges: dict[str, list[str]] = field(default_factory=dict)
    bootstrap_edges: dict[str, list[str]] = field(default_factory=dict)

    def __iter__(self) -> Iterator[Resource]:
        return (self.resources[name] for name in self.order)

    def __len__(self) -> int:
        return len(self.order)

    def __contains__(self, name: object) -> bool:
        return name in self.resources

    def resource(self, name: str) -> Resource:
        return self.resources[name]

    def dependencies(self, name: str) -> list[str]:
        """Non-bootstrap dependencies of a resource."""
        return list(self.edges.get(name, []))

    def dependents(self, name: str) -> list[str]:
        """Resources holding a non-bootstrap reference to `name`, in order."""
        return [other for other in self.order if name in self.edges.get(other, [])]

    def reverse_order(self) -> list[str]:
        return list(reversed(self.order))


class GraphResolver:
    """
    Depth-first resolver with recursion-stack cycle detection.

    Example:
        resolver = GraphResolver()
        graph = resolver.resolve([registry, api, edge, dns])
        graph.order  # ["registry", "api", "edge", "dns"]
    """

    def resolve(self, resources: Iterable[Resource]) -> ResourceGraph:
        declared: dict[str, Resource] = {}
        for resource in resources:
            if resource.name in declared:
                raise DeclarationError(f"Resource '{resource.name}' is declared twice")
            declared[resource.name] = resource

        edges: dict[str, list[str]] = {}
        bootstrap_edges: dict[str, list[str]] = {}
        for name, resource in declared.items():
            for target in resource.dependencies(include_bootstrap=True):
                if target not in declared:
                    raise DeclarationError(
                        f"Resource '{name}' references undeclared resource '{target}'"
                    )
            edges[name] = resource.dependencies()
            bootstrap_edges[name] = [
                t for t in resource.bootstrap_dependencies() if t not in edges[name]
            ]

        order = self._linearize(list(declared), edges)
        logger.debug(f"[graph] Resolved order: {order}")
        return ResourceGraph(
            resources=declared,
            order=order,
            edges=edges,
            bootstrap_edges=bootstrap_edges,
        )

    def _linearize(self, names: list[str], edges: dict[str, list[str]]) -> list[str]:
        marks = {name: _Mark.UNVISITED for name in names}
        order: list[str] = []

        def visit(name: str) -> None:
            marks[name] = _Mark.ON_STACK
            for dependency in edges[name]:
                if marks[dependency] == _Mark.ON_STACK:
                    raise CycleError(self._minimal_cycle(dependency, edges))
                if marks[dependency] == _Mark.UNVISITED:
                    visit(dependency)
            marks[name] = _Mark.DONE
            order.append(name)

        for name in names:
            if marks[name] == _Mark.UNVISITED:
                visit(name)
        return order

    @staticmethod
    def _minimal_cycle(start: str, edges: dict[str, list[str]]) -> list[str]:
        """Shortest cycle through `start`, found breadth-first."""
        parents: dict[str, str] = {}
        queue = deque([start])
        seen = {start}
        while queue:
            current = queue.popleft()
            for dependency in edges[current]:
                if dependency == start:
                    path = [current]
                    while path[-1] != start:
                        path.append(parents[path[-1]])
                    path.reverse()
                    return path + [start]
                if dependency not in seen:
                    seen.add(dependency)
                    parents[dependency] = current
                    queue.append(dependency)
        return [start, start]
