"""Resource dependency ordering and validation.

This module implements dependency management for one apply cycle:
1. Dependency graph construction from reference edges
2. Topological sorting for execution order
3. Cycle detection before any plan is built
4. Downstream lookups used to cancel dependents of a failed resource

DESIGN PHILOSOPHY:
- Edges come from attribute references and explicit dependsOn entries
- Ties are broken lexicographically on "<type>.<name>" so the same graph
  always yields the same order, which keeps plans reproducible
- A cycle is reported with the resources that take part in it
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .graph import ResourceGraph, ResourceNode
from .references import ResourceAddress

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CycleError(DependencyError):
    """Raised when a reference cycle makes ordering impossible."""

    def __init__(self, participants: list[ResourceAddress]) -> None:
        self.participants = sorted(participants)
        names = ", ".join(str(a) for a in self.participants)
        super().__init__(f"Circular dependency detected involving: {names}")


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    address: ResourceAddress
    depends_on: set[ResourceAddress] = field(default_factory=set)


@dataclass
class DependencyGraph:
    """Directed graph of resource dependencies (edges point upstream)."""

    nodes: dict[ResourceAddress, DependencyNode] = field(default_factory=dict)

    @classmethod
    def from_resource_graph(cls, graph: ResourceGraph) -> DependencyGraph:
        """Build the dependency graph of a resource graph."""
        dependency_graph = cls()
        for node in graph.nodes.values():
            dependency_graph.add_node(node.address, node.dependencies)
        return dependency_graph

    def add_node(
        self, address: ResourceAddress, depends_on: Iterable[ResourceAddress] | None = None
    ) -> None:
        """Add a node to the dependency graph.

        Args:
            address: Resource address.
            depends_on: Addresses this resource depends on.
        """
        deps = set(depends_on or ())
        if address in self.nodes:
            self.nodes[address].depends_on |= deps
        else:
            self.nodes[address] = DependencyNode(address=address, depends_on=deps)

        # Ensure all dependencies have nodes (even if not yet defined)
        for dep in deps:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(address=dep)

    def dependents(self, address: ResourceAddress) -> list[ResourceAddress]:
        """Direct dependents of an address, sorted."""
        return sorted(a for a, node in self.nodes.items() if address in node.depends_on)

    def transitive_dependents(self, address: ResourceAddress) -> set[ResourceAddress]:
        """Every address that depends on the given one, directly or not."""
        reverse: dict[ResourceAddress, set[ResourceAddress]] = {a: set() for a in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                reverse.setdefault(dep, set()).add(node.address)

        seen: set[ResourceAddress] = set()
        stack = list(reverse.get(address, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(reverse.get(current, ()))
        return seen

    def topological_sort(self) -> list[ResourceAddress]:
        """Return addresses in dependency order (dependencies first).

        Returns:
            List of addresses in execution order.

        Raises:
            CycleError: If a cycle is detected.
        """
        # Build adjacency list (reversed - edges point to dependents)
        dependents: dict[ResourceAddress, list[ResourceAddress]] = {a: [] for a in self.nodes}
        in_degree: dict[ResourceAddress, int] = {a: 0 for a in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.address)
                in_degree[node.address] += 1

        # Kahn's algorithm
        result: list[ResourceAddress] = []
        queue = [a for a, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among ready nodes
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self.nodes):
            remaining = {a for a, degree in in_degree.items() if degree > 0}
            raise CycleError(self._cycle_members(remaining))

        return result

    def _cycle_members(self, remaining: set[ResourceAddress]) -> list[ResourceAddress]:
        """Strip nodes that merely sit downstream of a cycle."""
        members = set(remaining)
        changed = True
        while changed:
            changed = False
            for address in sorted(members):
                has_dependent = any(
                    address in self.nodes[other].depends_on
                    for other in members
                    if other != address
                )
                self_loop = address in self.nodes[address].depends_on
                if not has_dependent and not self_loop:
                    members.discard(address)
                    changed = True
        return sorted(members or remaining)

    def get_ready(self, satisfied: set[ResourceAddress]) -> list[ResourceAddress]:
        """Get addresses that are ready to apply (all deps satisfied).

        Args:
            satisfied: Addresses already applied.

        Returns:
            Sorted list of addresses that can be applied now.
        """
        ready = []
        for node in self.nodes.values():
            if node.address in satisfied:
                continue
            if all(dep in satisfied for dep in node.depends_on):
                ready.append(node.address)
        return sorted(ready)


def resolve(graph: ResourceGraph) -> list[ResourceNode]:
    """Compute the execution order of a resource graph.

    Args:
        graph: Validated resource graph.

    Returns:
        Nodes ordered so every node follows all nodes it references.

    Raises:
        CycleError: If the references form a cycle.
    """
    dependency_graph = DependencyGraph.from_resource_graph(graph)
    try:
        order = dependency_graph.topological_sort()
    except CycleError as e:
        logger.error(
            "Dependency cycle detected",
            extra={"participants": [str(a) for a in e.participants]},
        )
        raise

    logger.debug("Resolved execution order", extra={"order": [str(a) for a in order]})
    return [graph.nodes[address] for address in order]
