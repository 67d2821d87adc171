"""Dependency graph utilities."""

from __future__ import annotations

import heapq
import logging
from typing import TYPE_CHECKING

from reconciler.errors import DependencyCycleError, UnresolvedReferenceError
from reconciler.resources.references import ResourceAddress, iter_references

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from reconciler.resources.expansion import Expansion

logger = logging.getLogger(__name__)


class DependencyGraph:
    """A directed graph where nodes depend on other nodes.

    The graph is read-only once built.
    """

    def __init__(
        self,
        nodes: Iterable[str],
        dependencies: Mapping[str, Iterable[str]],
    ) -> None:
        self._nodes = set(nodes)
        # node -> filtered deps within graph
        self._deps: dict[str, set[str]] = {}
        self._dependents: dict[str, set[str]] = {n: set() for n in self._nodes}
        for node in self._nodes:
            deps = set(dependencies.get(node, []))
            self._deps[node] = {d for d in deps if d in self._nodes}
            for dep in self._deps[node]:
                self._dependents[dep].add(node)

    @property
    def nodes(self) -> set[str]:
        return set(self._nodes)

    def dependencies_of(self, node: str) -> list[str]:
        return sorted(self._deps[node])

    def dependents_of(self, node: str) -> list[str]:
        return sorted(self._dependents[node])

    def transitive_dependents(self, node: str) -> list[str]:
        """Every node that (directly or indirectly) depends on *node*."""
        seen: set[str] = set()
        stack = list(self._dependents[node])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents[current])
        return sorted(seen)

    def topological_order(self) -> list[str]:
        """Return deterministic topo order (lexicographic tie-break)."""
        indegree: dict[str, int] = {n: len(deps) for n, deps in self._deps.items()}

        ready = [n for n, deg in indegree.items() if deg == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            node = heapq.heappop(ready)
            order.append(node)
            for child in sorted(self._dependents[node]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, child)

        if len(order) != len(self._nodes):
            raise DependencyCycleError(self._find_cycle(self._nodes - set(order)))

        return order

    def reverse_topological_order(self) -> list[str]:
        order = self.topological_order()
        order.reverse()
        return order

    def _find_cycle(self, remaining: set[str]) -> list[str]:
        """Return one cycle among *remaining* as ``[a, b, ..., a]``."""
        on_stack: dict[str, int] = {}
        path: list[str] = []
        visited: set[str] = set()

        def _visit(node: str) -> list[str] | None:
            visited.add(node)
            on_stack[node] = len(path)
            path.append(node)
            for dep in sorted(self._deps[node] & remaining):
                if dep in on_stack:
                    return [*path[on_stack[dep] :], dep]
                if dep not in visited:
                    found = _visit(dep)
                    if found:
                        return found
            path.pop()
            del on_stack[node]
            return None

        for start in sorted(remaining):
            if start not in visited:
                cycle = _visit(start)
                if cycle:
                    # Edges point from dependent to dependency; report in
                    # dependency order so each entry is applied before the next.
                    cycle.reverse()
                    return cycle
        return sorted(remaining)


def _targets(
    address: str,
    attribute: str | None,
    target: ResourceAddress,
    expansion: Expansion,
) -> list[str]:
    key = str(target)
    if key in expansion.instances:
        return [key]
    if target.index is None and key in expansion.bindings:
        # Unindexed reference to a repeated resource fans out to every instance.
        return expansion.instance_addresses(key)
    raise UnresolvedReferenceError(address, attribute, key)


def resolve_dependencies(expansion: Expansion) -> dict[str, list[str]]:
    """Map every instance to its implicit (reference) and explicit dependencies."""
    dep_map: dict[str, list[str]] = {}
    for address, r in expansion.instances.items():
        deps: set[str] = set()
        for dep in r.depends_on:
            deps.update(_targets(address, None, ResourceAddress.parse(dep), expansion))
        for attribute, value in r.attributes.items():
            for reference in iter_references(value):
                deps.update(_targets(address, attribute, reference.target, expansion))
        dep_map[address] = sorted(deps)
    return dep_map


def build_dependency_graph(expansion: Expansion) -> tuple[DependencyGraph, dict[str, list[str]]]:
    """Build the graph of concrete instances and check it is acyclic."""
    dep_map = resolve_dependencies(expansion)
    graph = DependencyGraph(expansion.instances, dep_map)
    graph.topological_order()
    logger.debug(
        "Dependency graph: %d nodes, %d edges",
        len(dep_map),
        sum(len(d) for d in dep_map.values()),
    )
    return graph, dep_map
