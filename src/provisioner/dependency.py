"""Dependency ordering and validation for resource descriptors.

This module implements dependency management for a deployment plan:
1. Dependency graph construction from descriptor declarations
2. Topological sorting for execution order (dependencies first)
3. Cycle detection before any apply begins
4. Ready-set computation for the concurrent scheduler

DESIGN:
- Descriptors declare dependencies via `depends_on`
- Ordering is deterministic: among descriptors with no ordering constraint
  between them, declaration order wins, so repeated runs produce the same
  plan and diffs stay readable
- A cycle is a configuration error and is never broken silently

EXAMPLE:
    db-instance  <-  database
    db-instance  <-  db-user  <-  n8n-service
    service-account  <-  db-password-access  <-  n8n-service
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from .config import ConfigError
from .descriptors import ResourceDescriptor

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected.

    Attributes:
        cycle: Descriptor ids along the cycle, first id repeated at the end.
    """

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class _Mark(Enum):
    VISITING = 1
    DONE = 2


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    descriptor_id: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of descriptor dependencies.

    Node insertion order is the declaration order used for tie-breaking.
    """

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    @classmethod
    def from_descriptors(cls, descriptors: Iterable[ResourceDescriptor]) -> DependencyGraph:
        """Build a graph from descriptors.

        Raises:
            ConfigError: If a descriptor depends on an id that is not declared.
        """
        graph = cls()
        for descriptor in descriptors:
            graph.add_node(descriptor.id, list(descriptor.depends_on))

        unknown = [
            f"'{node.descriptor_id}' -> '{dep}'"
            for node in graph.nodes.values()
            for dep in node.depends_on
            if dep not in graph.nodes
        ]
        if unknown:
            raise ConfigError(f"Unknown dependencies: {', '.join(unknown)}")
        return graph

    def add_node(self, descriptor_id: str, depends_on: list[str] | None = None) -> None:
        """Add a node to the dependency graph.

        Args:
            descriptor_id: Descriptor id.
            depends_on: Ids this descriptor depends on, in declaration order.

        Raises:
            ConfigError: If the id is already present.
        """
        if descriptor_id in self.nodes:
            raise ConfigError(f"Duplicate descriptor id '{descriptor_id}'")
        self.nodes[descriptor_id] = DependencyNode(
            descriptor_id=descriptor_id,
            depends_on=list(dict.fromkeys(depends_on or [])),
        )

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.topological_sort()

    def topological_sort(self) -> list[str]:
        """Return descriptor ids in dependency order (dependencies first).

        Depth-first traversal: roots are visited in declaration order and each
        node's dependencies in the order they were declared, emitting a node
        once all of its dependencies have been emitted.

        Returns:
            List of descriptor ids in execution order.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        marks: dict[str, _Mark] = {}
        result: list[str] = []

        for root in self.nodes:
            if root in marks:
                continue
            # Iterative DFS keeps deep chains clear of the recursion limit
            path: list[str] = [root]
            stack: list[tuple[str, int]] = [(root, 0)]
            marks[root] = _Mark.VISITING

            while stack:
                current, index = stack[-1]
                deps = self.nodes[current].depends_on

                if index < len(deps):
                    stack[-1] = (current, index + 1)
                    dep = deps[index]
                    if dep not in self.nodes:
                        continue
                    mark = marks.get(dep)
                    if mark is _Mark.VISITING:
                        cycle = path[path.index(dep):] + [dep]
                        logger.error(
                            "Dependency cycle detected",
                            extra={"cycle": cycle},
                        )
                        raise CyclicDependencyError(cycle)
                    if mark is None:
                        marks[dep] = _Mark.VISITING
                        path.append(dep)
                        stack.append((dep, 0))
                    continue

                stack.pop()
                path.pop()
                marks[current] = _Mark.DONE
                result.append(current)

        return result

    def reverse_order(self) -> list[str]:
        """Return ids in destroy order (dependents first)."""
        return list(reversed(self.topological_sort()))

    def direct_dependents(self, descriptor_id: str) -> list[str]:
        return [
            node.descriptor_id
            for node in self.nodes.values()
            if descriptor_id in node.depends_on
        ]

    def dependents_of(self, descriptor_id: str) -> list[str]:
        """Return every descriptor that transitively depends on descriptor_id.

        Ordered by declaration order.
        """
        found: set[str] = set()
        frontier = [descriptor_id]
        while frontier:
            current = frontier.pop()
            for dependent in self.direct_dependents(current):
                if dependent not in found:
                    found.add(dependent)
                    frontier.append(dependent)
        return [d for d in self.nodes if d in found]

    def dependencies_of(self, descriptor_id: str) -> list[str]:
        """Return every descriptor descriptor_id transitively depends on."""
        found: set[str] = set()
        frontier = list(self.nodes[descriptor_id].depends_on)
        while frontier:
            current = frontier.pop()
            if current in found or current not in self.nodes:
                continue
            found.add(current)
            frontier.extend(self.nodes[current].depends_on)
        return [d for d in self.nodes if d in found]

    def get_ready(
        self,
        satisfied: set[str],
        exclude: set[str] | None = None,
    ) -> list[str]:
        """Get descriptors whose dependencies are all satisfied.

        Args:
            satisfied: Ids already Ready.
            exclude: Ids already started, finished or blocked.

        Returns:
            Ready ids in declaration order.
        """
        exclude = exclude or set()
        return [
            node.descriptor_id
            for node in self.nodes.values()
            if node.descriptor_id not in satisfied
            and node.descriptor_id not in exclude
            and all(dep in satisfied for dep in node.depends_on)
        ]
