"""Unit dependency graph.

This module provides the UnitGraph class that holds units and their dependency
edges. Every edge insertion is checked for acyclicity, so a UnitGraph can never
hold a cycle.
"""

from __future__ import annotations

from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass, field
from graphlib import TopologicalSorter
from typing import Any

from stackwright.errors import CyclicDependencyError, MissingUnitError
from stackwright.models import DEFAULT_MOCK_ACTIONS, Action


@dataclass(frozen=True)
class DependencyEdge:
    """Directed relation from a dependent unit to a provider unit."""

    dependent: str
    provider: str
    path: str
    """Provider path as written by the dependent (e.g. '../vpc')."""

    enabled: bool = True
    skip_outputs: bool = False
    mock_outputs: dict[str, Any] = field(default_factory=dict)
    mock_outputs_allowed_actions: frozenset[Action] = frozenset(DEFAULT_MOCK_ACTIONS)

    def allows_mocks(self, action: Action) -> bool:
        """Whether mock outputs may stand in for this action."""
        return action in self.mock_outputs_allowed_actions


class UnitGraph:
    """Directed acyclic graph of units.

    Edges point from a dependent to its provider. Disabled edges are kept for
    acyclicity checks and reporting but do not constrain ordering.
    """

    def __init__(self) -> None:
        """Create an empty graph."""
        self._nodes: dict[str, None] = {}
        self._edges: dict[str, dict[str, DependencyEdge]] = {}
        self._reverse: dict[str, set[str]] = {}

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def add_unit(self, name: str) -> None:
        """Add a unit with no edges. No-op if it already exists."""
        if name in self._nodes:
            return
        self._nodes[name] = None
        self._edges[name] = {}
        self._reverse[name] = set()

    def add_edge(self, edge: DependencyEdge) -> None:
        """Insert an edge after checking it keeps the graph acyclic.

        Re-adding an existing dependent/provider pair replaces the edge.

        Args:
            edge: The edge to insert.

        Raises:
            MissingUnitError: If either endpoint is not a unit in the graph.
            CyclicDependencyError: If the edge would close a cycle.

        """
        for name in (edge.dependent, edge.provider):
            if name not in self._nodes:
                raise MissingUnitError(f"Unit '{name}' is not part of the graph")

        path = self._find_path(edge.provider, edge.dependent)
        if path is not None:
            cycle = [edge.dependent, *path]
            raise CyclicDependencyError(
                f"Cycle detected in unit dependencies: {' -> '.join(cycle)}",
                cycle=cycle,
            )

        self._edges[edge.dependent][edge.provider] = edge
        self._reverse[edge.provider].add(edge.dependent)

    def _find_path(self, start: str, goal: str) -> list[str] | None:
        """Depth-first search along dependency edges from start to goal."""
        stack: list[tuple[str, list[str]]] = [(start, [start])]
        visited: set[str] = set()
        while stack:
            node, path = stack.pop()
            if node == goal:
                return path
            if node in visited:
                continue
            visited.add(node)
            for provider in sorted(self._edges[node]):
                stack.append((provider, [*path, provider]))
        return None

    def validate(self) -> None:
        """Re-check the whole graph for cycles with a recursion-stack DFS.

        Raises:
            CyclicDependencyError: If a cycle is detected.

        """
        done: set[str] = set()
        on_stack: list[str] = []

        def visit(node: str) -> None:
            if node in on_stack:
                cycle = [*on_stack[on_stack.index(node) :], node]
                raise CyclicDependencyError(
                    f"Cycle detected in unit dependencies: {' -> '.join(cycle)}",
                    cycle=cycle,
                )
            if node in done:
                return
            on_stack.append(node)
            for provider in sorted(self._edges[node]):
                visit(provider)
            on_stack.pop()
            done.add(node)

        for node in self._nodes:
            visit(node)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def units(self) -> list[str]:
        """Unit names in insertion order."""
        return list(self._nodes)

    def __contains__(self, name: object) -> bool:
        """Whether a unit is part of the graph."""
        return name in self._nodes

    def __len__(self) -> int:
        """Number of units in the graph."""
        return len(self._nodes)

    def edges(self, dependent: str) -> list[DependencyEdge]:
        """All edges declared by a unit, enabled or not."""
        return list(self._edges.get(dependent, {}).values())

    def all_edges(self) -> list[DependencyEdge]:
        """Every edge in the graph."""
        return [edge for edges in self._edges.values() for edge in edges.values()]

    def edge(self, dependent: str, provider: str) -> DependencyEdge | None:
        """The edge between two units, if any."""
        return self._edges.get(dependent, {}).get(provider)

    def get_dependencies(self, name: str, *, include_disabled: bool = False) -> set[str]:
        """Get the units that this unit depends on.

        Args:
            name: The unit to query.
            include_disabled: Also return providers of disabled edges.

        Returns:
            Set of provider unit names.

        """
        return {
            provider
            for provider, edge in self._edges.get(name, {}).items()
            if include_disabled or edge.enabled
        }

    def get_dependents(self, name: str, *, include_disabled: bool = False) -> set[str]:
        """Get the units that depend on this unit.

        Args:
            name: The unit to query.
            include_disabled: Also return dependents through disabled edges.

        Returns:
            Set of dependent unit names.

        """
        return {
            dependent
            for dependent in self._reverse.get(name, set())
            if include_disabled or self._edges[dependent][name].enabled
        }

    def transitive_dependencies(self, names: Iterable[str]) -> set[str]:
        """All units reachable through enabled dependency edges (excluding names)."""
        return self._closure(names, self.get_dependencies)

    def transitive_dependents(self, names: Iterable[str]) -> set[str]:
        """All units that transitively depend on names (excluding names)."""
        return self._closure(names, self.get_dependents)

    def _closure(
        self, names: Iterable[str], step: Callable[[str], set[str]]
    ) -> set[str]:
        start = set(names)
        seen: set[str] = set()
        # Iterative traversal to avoid recursion limits on deep chains
        to_visit = [n for name in start for n in step(name)]
        while to_visit:
            node = to_visit.pop()
            if node in seen:
                continue
            seen.add(node)
            to_visit.extend(step(node))
        return seen - start

    # -------------------------------------------------------------------------
    # Ordering
    # -------------------------------------------------------------------------

    def ordering_graph(
        self, nodes: Collection[str] | None = None, *, reverse: bool = False
    ) -> dict[str, set[str]]:
        """Predecessor map restricted to nodes, using enabled edges only.

        Args:
            nodes: Units to include. Defaults to every unit.
            reverse: Invert edges so dependents come first (destroy order).

        Returns:
            Mapping of unit to the units that must finish before it.

        """
        selected = set(self._nodes) if nodes is None else set(nodes)
        graph: dict[str, set[str]] = {}
        for name in self._nodes:
            if name not in selected:
                continue
            if reverse:
                before = self.get_dependents(name)
            else:
                before = self.get_dependencies(name)
            graph[name] = before & selected
        return graph

    def create_sorter(
        self, nodes: Collection[str] | None = None, *, reverse: bool = False
    ) -> TopologicalSorter[str]:
        """Create a new prepared TopologicalSorter for parallel execution.

        Each call creates a fresh sorter instance - the sorter is stateful
        and calling done() on one instance does not affect other instances.

        Args:
            nodes: Units to include. Defaults to every unit.
            reverse: Invert edges so dependents come first.

        Returns:
            A new, prepared TopologicalSorter.

        """
        sorter: TopologicalSorter[str] = TopologicalSorter(
            self.ordering_graph(nodes, reverse=reverse)
        )
        sorter.prepare()
        return sorter

    def levels(
        self, nodes: Collection[str] | None = None, *, reverse: bool = False
    ) -> list[list[str]]:
        """Group units into dependency levels, each level sorted by name.

        Level 0 holds units with no predecessors inside nodes; every unit sits
        one level after its latest predecessor.
        """
        sorter = self.create_sorter(nodes, reverse=reverse)
        result: list[list[str]] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready())
            if not ready:
                break
            result.append(ready)
            sorter.done(*ready)
        return result

    def topological_order(
        self, nodes: Collection[str] | None = None, *, reverse: bool = False
    ) -> list[str]:
        """Deterministic topological order (level by level, names sorted)."""
        return [name for level in self.levels(nodes, reverse=reverse) for name in level]

    def get_depth(self) -> int:
        """Get the number of sequential levels in the graph."""
        return len(self.levels())
