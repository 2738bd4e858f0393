"""
Dependency Graph for Andon.

Orders work units so that no unit runs before the units it depends on.
Among units that are ready at the same time, simpler ones (lower
complexity) go first, then earlier input position, then id. The order is
fully determined by the input, so resolving the same scope twice gives
the same sequence.
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from dataclasses import dataclass


@dataclass(frozen=True)
class _NodeKey:
    complexity: int
    index: int
    unit_id: str

    def as_tuple(self) -> tuple[int, int, str]:
        return (self.complexity, self.index, self.unit_id)


class DependencyGraph:
    """
    Directed graph of unit id -> ids it depends on.

    Example:
        T-1: no deps        (complexity 3)
        T-2: no deps        (complexity 1)
        T-3: deps on T-1

        topological_sort() -> ["T-2", "T-1", "T-3"]
    """

    def __init__(self) -> None:
        # Adjacency list: unit_id -> set of direct dependency ids
        self._graph: dict[str, set[str]] = {}
        self._keys: dict[str, _NodeKey] = {}

    def add_unit(
        self,
        unit_id: str,
        dependencies: list[str],
        complexity: int = 0,
        index: int = 0,
    ) -> None:
        """
        Add a unit and its dependencies.

        Dependencies must themselves be added for the order to include
        them; callers drop unknown ids before adding.
        """
        self._graph[unit_id] = {d for d in dependencies if d != unit_id}
        self._keys[unit_id] = _NodeKey(complexity, index, unit_id)

    def add_dependency(self, unit_id: str, depends_on: str) -> None:
        if unit_id != depends_on:
            self._graph.setdefault(unit_id, set()).add(depends_on)

    def get_direct_dependencies(self, unit_id: str) -> set[str]:
        return self._graph.get(unit_id, set()).copy()

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._graph

    def _sort(self) -> tuple[list[str], list[str]]:
        """Kahn's algorithm. Returns (ordered ids, ids left over in cycles)."""
        dependents_of: dict[str, set[str]] = defaultdict(set)
        remaining: dict[str, int] = {}
        for unit_id, deps in self._graph.items():
            known = {d for d in deps if d in self._graph}
            remaining[unit_id] = len(known)
            for dep in known:
                dependents_of[dep].add(unit_id)

        available = [self._keys[u].as_tuple() for u, n in remaining.items() if n == 0]
        heapq.heapify(available)

        result: list[str] = []
        while available:
            _, _, unit_id = heapq.heappop(available)
            result.append(unit_id)
            for dependent in dependents_of[unit_id]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(available, self._keys[dependent].as_tuple())

        leftover = sorted(u for u, n in remaining.items() if n > 0)
        return result, leftover

    def has_cycle(self) -> tuple[bool, list[str]]:
        """
        Detect cycles in the dependency graph.

        Returns:
            Tuple of (has_cycle, ids that could not be ordered).
        """
        _, leftover = self._sort()
        return bool(leftover), leftover

    def topological_sort(self) -> list[str]:
        """
        Return unit ids in dependency order.

        Returns an empty list if the graph has cycles.
        """
        ordered, leftover = self._sort()
        if leftover:
            return []
        return ordered

    def __repr__(self) -> str:
        return f"DependencyGraph(units={len(self._graph)})"
