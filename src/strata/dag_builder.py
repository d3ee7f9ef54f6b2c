"""DAG (Directed Acyclic Graph) builder for unit dependencies.

This module uses NetworkX to build a directed graph from discovered units,
enabling dependency traversal, cycle detection and deterministic ordering.
Edges point from a dependency to its dependent.
"""

import os
from typing import Dict, Iterable, List, Optional, Set

import networkx as nx

from strata.discovery import Unit


class DAGError(Exception):
    """Base exception for DAG-related errors."""

    pass


class CycleError(DAGError):
    """Raised when a cycle is detected in the dependency graph."""

    def __init__(self, message: str, cycles: Optional[List[List[str]]] = None):
        super().__init__(message)
        self.cycles = cycles or []


def _rotate(cycle: List[str]) -> List[str]:
    start = cycle.index(min(cycle))
    return cycle[start:] + cycle[:start]


class DependencyGraph:
    """A directed graph of units keyed by unit path.

    This class wraps a NetworkX DiGraph and provides methods for
    dependency resolution and traversal.
    """

    def __init__(self, units: Dict[str, Unit]):
        """Build a dependency graph from discovered units.

        Dependencies on units that are not part of ``units`` are ignored.

        Args:
            units: Units keyed by path.

        Raises:
            CycleError: If a cycle is detected in the dependency graph.
        """
        self.units = units
        self.graph = nx.DiGraph()
        self._build_graph()
        self._detect_cycles()

    def _build_graph(self):
        for path in sorted(self.units):
            self.graph.add_node(path, unit=self.units[path])

        for path in sorted(self.units):
            for dependency in sorted(self.units[path].dependencies):
                if dependency == path:
                    raise CycleError(f"Unit {path} depends on itself", [[path]])
                if dependency in self.units:
                    self.graph.add_edge(dependency, path)

    def _detect_cycles(self):
        """Detect cycles in the dependency graph.

        Raises:
            CycleError: If a cycle is detected. Every cycle is listed.
        """
        try:
            cycles = sorted(_rotate(cycle) for cycle in nx.simple_cycles(self.graph))
        except nx.NetworkXError as e:
            raise DAGError(f"Error detecting cycles: {e}")
        if cycles:
            # Edges point to dependents; show the chain as "depends on".
            cycle_strs = [
                " -> ".join(reversed(cycle)) + f" -> {cycle[-1]}" for cycle in cycles
            ]
            raise CycleError(
                "Circular dependency detected in dependency graph:\n"
                + "\n".join(f"  - {cycle_str}" for cycle_str in cycle_strs),
                cycles,
            )

    def _check(self, path: str) -> None:
        if path not in self.graph:
            raise DAGError(f"Unit '{path}' not found in dependency graph")

    def get_unit(self, path: str) -> Unit:
        self._check(path)
        return self.graph.nodes[path]["unit"]

    def get_dependencies(self, path: str) -> Set[str]:
        """Units this unit directly depends on."""
        self._check(path)
        return set(self.graph.predecessors(path))

    def get_dependents(self, path: str) -> Set[str]:
        """Units that directly depend on this unit."""
        self._check(path)
        return set(self.graph.successors(path))

    def get_all_dependencies(self, path: str) -> Set[str]:
        self._check(path)
        return set(nx.ancestors(self.graph, path))

    def get_all_dependents(self, path: str) -> Set[str]:
        self._check(path)
        return set(nx.descendants(self.graph, path))

    def topological_sort(self, reverse: bool = False) -> List[str]:
        """Get a deterministic topological sort of all units.

        Ties are broken by path so that the order is stable across runs.

        Args:
            reverse: Order dependents before their dependencies, as destroy
                commands need.

        Returns:
            List of unit paths.
        """
        graph = self.graph.reverse(copy=False) if reverse else self.graph
        try:
            return list(nx.lexicographical_topological_sort(graph))
        except (nx.NetworkXError, nx.NetworkXUnfeasible) as e:
            raise DAGError(f"Failed to perform topological sort: {e}")

    def get_execution_order(self, paths: Iterable[str], reverse: bool = False) -> List[str]:
        """Order a set of units together with all their dependencies."""
        needed = set()
        for path in paths:
            self._check(path)
            needed.add(path)
            needed.update(self.get_all_dependencies(path))
        return [path for path in self.topological_sort(reverse) if path in needed]

    def subgraph(self, paths: Iterable[str]) -> "DependencyGraph":
        """A new graph limited to ``paths``."""
        keep = set(paths)
        return DependencyGraph({path: unit for path, unit in self.units.items() if path in keep})

    def get_all_units(self) -> Set[str]:
        return set(self.graph.nodes())

    def __len__(self) -> int:
        return self.graph.number_of_nodes()

    def __contains__(self, path: str) -> bool:
        return path in self.graph


def format_unit_list(order: List[str], working_dir: str) -> str:
    """One unit per line, relative to ``working_dir``, in the given order."""
    return "\n".join(os.path.relpath(path, working_dir) for path in order)


def to_dot(graph: DependencyGraph, working_dir: str) -> str:
    """Render the graph as a DOT digraph.

    Like ``graph-dependencies``, every edge points from a unit to one of its
    dependencies.
    """
    lines = ["digraph {"]
    for path in sorted(graph.get_all_units()):
        name = os.path.relpath(path, working_dir)
        lines.append(f'\t"{name}" ;')
        for dependency in sorted(graph.get_dependencies(path)):
            lines.append(f'\t"{name}" -> "{os.path.relpath(dependency, working_dir)}";')
    lines.append("}")
    return "\n".join(lines)
