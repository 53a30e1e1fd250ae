"""Service descriptor graph: validation and ordering helpers."""
from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Mapping, Sequence

from .models import UnitSpec


class GraphError(Exception):
    pass


class UnknownDependencyError(GraphError):
    def __init__(self, unit: str, missing: Sequence[str]):
        self.unit = unit
        self.missing = list(missing)
        super().__init__(f"Unit '{unit}' depends on undeclared unit(s): {', '.join(self.missing)}")


class GraphCycleError(GraphError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


def dependency_map(units: Iterable[UnitSpec]) -> dict[str, list[str]]:
    return {u.name: list(dict.fromkeys(u.depends_on)) for u in units}


def find_cycle(deps: Mapping[str, Sequence[str]]) -> list[str] | None:
    """Return one cycle as a closed path (first node repeated at the end), or None.

    Iterative DFS with white/grey/black colouring; nodes are visited in
    declaration order so the reported cycle is stable between runs.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in deps}

    for root in deps:
        if color[root] != WHITE:
            continue
        path: list[str] = [root]
        stack = [iter(deps[root])]
        color[root] = GREY
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            if nxt not in color:
                continue
            if color[nxt] == GREY:
                return path[path.index(nxt):] + [nxt]
            if color[nxt] == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append(iter(deps[nxt]))
    return None


def validate_graph(units: Iterable[UnitSpec]) -> dict[str, list[str]]:
    """Check that every dependency is declared and the relation is acyclic.

    Returns the dependency map. Raises UnknownDependencyError or GraphCycleError.
    """
    deps = dependency_map(units)
    for name, ds in deps.items():
        missing = [d for d in ds if d not in deps]
        if missing:
            raise UnknownDependencyError(name, missing)
    cycle = find_cycle(deps)
    if cycle:
        raise GraphCycleError(cycle)
    return deps


def dependents_map(deps: Mapping[str, Sequence[str]]) -> dict[str, list[str]]:
    """Reverse edges: unit -> units that directly depend on it."""
    out: dict[str, list[str]] = defaultdict(list)
    for name in deps:
        out.setdefault(name, [])
    for name, ds in deps.items():
        for d in ds:
            out[d].append(name)
    return dict(out)


def layers(deps: Mapping[str, Sequence[str]]) -> list[list[str]]:
    """Group units into start layers (Kahn's algorithm, declaration order within a layer)."""
    remaining = {n: set(ds) for n, ds in deps.items()}
    out: list[list[str]] = []
    while remaining:
        layer = [n for n, ds in remaining.items() if not ds]
        if not layer:
            raise GraphCycleError(find_cycle({n: list(ds) for n, ds in remaining.items()}) or list(remaining))
        out.append(layer)
        for n in layer:
            del remaining[n]
        for ds in remaining.values():
            ds.difference_update(layer)
    return out


def shutdown_order(deps: Mapping[str, Sequence[str]]) -> list[str]:
    """Dependents before dependencies."""
    order: list[str] = []
    for layer in reversed(layers(deps)):
        order.extend(reversed(layer))
    return order
