"""
Dependency graph builder.

``build`` turns validated unit specs into an immutable ``DependencyGraph``.
Cycles are found with a three-colour depth-first traversal; the start order
is a topological sort where, among units whose dependencies are all placed,
the one declared first goes first.
"""

from __future__ import annotations

import heapq
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterator, List, Mapping, Sequence, Set, Tuple

from service_orchestrator.core.errors import CycleError, ValidationError
from service_orchestrator.core.units import UnitSpec


class _Color(Enum):
    WHITE = 0  # unvisited
    GRAY = 1   # on the traversal stack
    BLACK = 2  # done


class DependencyGraph:
    """Read-only view of a topology: edges in both directions plus orderings."""

    def __init__(
        self,
        units: Sequence[UnitSpec],
        dependencies: Dict[str, Tuple[str, ...]],
        dependents: Dict[str, Tuple[str, ...]],
        start_order: Tuple[str, ...],
    ) -> None:
        self._units: Mapping[str, UnitSpec] = MappingProxyType({u.name: u for u in units})
        self._dependencies: Mapping[str, Tuple[str, ...]] = MappingProxyType(dict(dependencies))
        self._dependents: Mapping[str, Tuple[str, ...]] = MappingProxyType(dict(dependents))
        self._start_order = start_order

    def __contains__(self, name: object) -> bool:
        return name in self._units

    def __len__(self) -> int:
        return len(self._units)

    def __iter__(self) -> Iterator[str]:
        return iter(self._start_order)

    @property
    def units(self) -> Mapping[str, UnitSpec]:
        return self._units

    @property
    def start_order(self) -> Tuple[str, ...]:
        return self._start_order

    @property
    def stop_order(self) -> Tuple[str, ...]:
        return tuple(reversed(self._start_order))

    def spec(self, name: str) -> UnitSpec:
        return self._units[name]

    def dependencies(self, name: str) -> Tuple[str, ...]:
        return self._dependencies[name]

    def dependents(self, name: str) -> Tuple[str, ...]:
        return self._dependents[name]

    def transitive_dependents(self, name: str) -> FrozenSet[str]:
        """Every unit that directly or indirectly depends on ``name``."""
        found: Set[str] = set()
        stack = list(self._dependents[name])
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self._dependents[current])
        return frozenset(found)

    def roots(self) -> Tuple[str, ...]:
        return tuple(n for n in self._start_order if not self._dependencies[n])


def _find_cycle(names: Sequence[str], dependencies: Mapping[str, Tuple[str, ...]]) -> List[str]:
    """Return one cycle as ``[a, b, ..., a]`` or an empty list."""
    color = {name: _Color.WHITE for name in names}

    for root in names:
        if color[root] is not _Color.WHITE:
            continue
        color[root] = _Color.GRAY
        # (unit, remaining dependencies) frames; chain depth never touches the call stack
        stack: List[Tuple[str, Iterator[str]]] = [(root, iter(dependencies[root]))]
        while stack:
            name, deps = stack[-1]
            for dep in deps:
                if color[dep] is _Color.GRAY:
                    # back edge: the cycle is the stack suffix starting at dep
                    path = [entry[0] for entry in stack]
                    return path[path.index(dep):] + [dep]
                if color[dep] is _Color.WHITE:
                    color[dep] = _Color.GRAY
                    stack.append((dep, iter(dependencies[dep])))
                    break
            else:
                stack.pop()
                color[name] = _Color.BLACK
    return []


def _topological_order(
    names: Sequence[str],
    dependencies: Mapping[str, Tuple[str, ...]],
    dependents: Mapping[str, Tuple[str, ...]],
) -> Tuple[str, ...]:
    position = {name: i for i, name in enumerate(names)}
    remaining = {name: len(dependencies[name]) for name in names}
    ready = [(position[n], n) for n in names if remaining[n] == 0]
    heapq.heapify(ready)

    order: List[str] = []
    while ready:
        _, name = heapq.heappop(ready)
        order.append(name)
        for child in dependents[name]:
            remaining[child] -= 1
            if remaining[child] == 0:
                heapq.heappush(ready, (position[child], child))
    return tuple(order)


def build(units: Sequence[UnitSpec]) -> DependencyGraph:
    """
    Build the dependency graph for a topology.

    Raises:
        ValidationError: duplicate names or dangling dependency references.
        CycleError: the dependency relation is not acyclic.
    """
    names: List[str] = []
    for unit in units:
        if unit.name in names:
            raise ValidationError(f"Duplicate unit name '{unit.name}'")
        names.append(unit.name)

    dependencies: Dict[str, Tuple[str, ...]] = {}
    children: Dict[str, List[str]] = {name: [] for name in names}
    for unit in units:
        for dep in unit.depends_on:
            if dep not in children:
                raise ValidationError(f"Unit '{unit.name}' depends on unknown unit '{dep}'")
            children[dep].append(unit.name)
        dependencies[unit.name] = tuple(unit.depends_on)
    dependents = {name: tuple(kids) for name, kids in children.items()}

    cycle = _find_cycle(names, dependencies)
    if cycle:
        raise CycleError(cycle)

    order = _topological_order(names, dependencies, dependents)
    return DependencyGraph(units, dependencies, dependents, order)


__all__ = ["DependencyGraph", "build"]
