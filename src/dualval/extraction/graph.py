"""
Node Dependency Graph

Directed acyclic graph of node dependencies. Edges point from a node to the
nodes whose content its correctness presupposes.
"""

from __future__ import annotations

from collections import deque
from typing import Iterable

from dualval.core.exceptions import DependencyCycle
from dualval.core.schemas import Node


class DependencyGraph:
    """
    Dependency graph over node ids.

    Usage:
        graph = DependencyGraph.from_nodes(nodes)
        graph.validate()
        for layer in graph.topological_layers():
            ...
    """

    def __init__(self, edges: dict[str, Iterable[str]]) -> None:
        self._deps: dict[str, frozenset[str]] = {
            node_id: frozenset(deps) for node_id, deps in edges.items()
        }
        dependents: dict[str, set[str]] = {node_id: set() for node_id in self._deps}
        for node_id, deps in self._deps.items():
            for dep in deps:
                dependents.setdefault(dep, set()).add(node_id)
        self._dependents = {k: frozenset(v) for k, v in dependents.items()}

    @classmethod
    def from_nodes(cls, nodes: Iterable[Node]) -> "DependencyGraph":
        return cls({node.node_id: node.depends_on for node in nodes})

    @property
    def node_ids(self) -> list[str]:
        return sorted(self._deps)

    def dependencies(self, node_id: str) -> frozenset[str]:
        """Direct dependencies of a node."""
        return self._deps.get(node_id, frozenset())

    def dependents(self, node_id: str) -> frozenset[str]:
        """Nodes that depend directly on `node_id`."""
        return self._dependents.get(node_id, frozenset())

    def closure(self, node_id: str) -> set[str]:
        """Transitive dependencies of a node (excluding the node itself)."""
        return self._walk([node_id], self.dependencies) - {node_id}

    def transitive_dependents(self, node_ids: Iterable[str]) -> set[str]:
        """All nodes that transitively depend on any of `node_ids`."""
        start = list(node_ids)
        return self._walk(start, self.dependents) - set(start)

    def impact_set(self, changed: Iterable[str]) -> set[str]:
        """Changed nodes plus everything that transitively depends on them."""
        changed = set(changed)
        return (changed | self.transitive_dependents(changed)) & set(self._deps)

    def _walk(self, start: list[str], neighbours) -> set[str]:
        seen: set[str] = set(start)
        queue = deque(start)
        while queue:
            current = queue.popleft()
            for nxt in neighbours(current):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return seen

    def find_cycle(self) -> list[str] | None:
        """Return one dependency cycle as a path, or None for a DAG."""
        white, grey, black = 0, 1, 2
        color = {node_id: white for node_id in self._deps}
        stack: list[str] = []

        def visit(node_id: str) -> list[str] | None:
            color[node_id] = grey
            stack.append(node_id)
            for dep in sorted(self.dependencies(node_id)):
                if dep not in color:
                    continue
                if color[dep] == grey:
                    return stack[stack.index(dep) :] + [dep]
                if color[dep] == white:
                    found = visit(dep)
                    if found:
                        return found
            stack.pop()
            color[node_id] = black
            return None

        for node_id in sorted(self._deps):
            if color[node_id] == white:
                found = visit(node_id)
                if found:
                    return found
        return None

    def validate(self) -> None:
        """Raise DependencyCycle unless the graph is a DAG."""
        cycle = self.find_cycle()
        if cycle:
            raise DependencyCycle(cycle)

    def topological_layers(self, subset: Iterable[str] | None = None) -> list[list[str]]:
        """
        Kahn layering restricted to `subset` (all nodes by default).

        Nodes in one layer have no unresolved dependency inside the subset and
        can be scored concurrently; layer N+1 waits for layer N.
        """
        members = set(self._deps) if subset is None else set(subset) & set(self._deps)
        indegree = {
            node_id: len(self.dependencies(node_id) & members) for node_id in members
        }
        layer = sorted(n for n, d in indegree.items() if d == 0)
        layers: list[list[str]] = []
        placed = 0
        while layer:
            layers.append(layer)
            placed += len(layer)
            following: set[str] = set()
            for node_id in layer:
                for dependent in self.dependents(node_id):
                    if dependent in indegree:
                        indegree[dependent] -= 1
                        if indegree[dependent] == 0:
                            following.add(dependent)
            layer = sorted(following)
        if placed != len(members):
            self.validate()
            raise DependencyCycle(sorted(n for n, d in indegree.items() if d > 0))
        return layers
