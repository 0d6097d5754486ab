"""Deterministic ordering of dependency graphs.

Works on plain adjacency maps (node -> set of nodes it depends on) so the
same code orders resource graphs, recorded state dependencies and plan
actions.
"""

from typing import Dict, Iterable, List, Mapping, Sequence, Set

from .errors import CycleError


def topological_order(
    order: Sequence[str],
    edges: Mapping[str, Iterable[str]],
) -> List[str]:
    """Order nodes so every node comes after all of its dependencies.

    Kahn's algorithm. Among nodes that are ready at the same time, the one
    earliest in ``order`` (declaration order) is emitted first.

    Args:
        order: All nodes, in tie-break order
        edges: node -> dependencies; dependencies outside ``order`` are ignored

    Raises:
        CycleError: If the graph contains a cycle
    """
    position = {node: i for i, node in enumerate(order)}
    remaining: Dict[str, int] = {}
    dependents: Dict[str, List[str]] = {node: [] for node in order}
    for node in order:
        deps = {d for d in edges.get(node, ()) if d in position}
        remaining[node] = len(deps)
        for dep in deps:
            dependents[dep].append(node)

    # Ready set kept sorted by declaration position; graphs here are small
    ready = sorted((n for n in order if remaining[n] == 0), key=position.__getitem__)
    result: List[str] = []
    while ready:
        node = ready.pop(0)
        result.append(node)
        for dependent in dependents[node]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                ready.append(dependent)
                ready.sort(key=position.__getitem__)

    if len(result) != len(order):
        stuck = [n for n in order if remaining[n] > 0]
        raise CycleError(find_cycle(stuck, edges) or stuck)
    return result


def reverse_topological_order(
    order: Sequence[str],
    edges: Mapping[str, Iterable[str]],
) -> List[str]:
    """Order nodes so every node comes before all of its dependencies.

    Used for deletes: dependents are removed before what they depend on.
    Ties are broken by reverse declaration order.
    """
    reversed_edges: Dict[str, Set[str]] = {node: set() for node in order}
    members = set(order)
    for node in order:
        for dep in edges.get(node, ()):
            if dep in members:
                reversed_edges[dep].add(node)
    return topological_order(list(reversed(order)), reversed_edges)


def find_cycle(nodes: Sequence[str], edges: Mapping[str, Iterable[str]]) -> List[str]:
    """Find one cycle among ``nodes`` using DFS.

    Returns:
        The nodes on the cycle in dependency order, starting at the
        lexicographically smallest node; empty list if there is no cycle.
    """
    WHITE = 0  # Unvisited
    GRAY = 1   # Currently being visited (in recursion stack)
    BLACK = 2  # Fully visited

    members = set(nodes)
    color = {node: WHITE for node in nodes}

    for start in sorted(nodes):  # Sort for deterministic order
        if color[start] != WHITE:
            continue
        # Iterative DFS; each frame is (node, iterator over its dependencies)
        path: List[str] = [start]
        color[start] = GRAY
        stack = [iter(sorted(d for d in edges.get(start, ()) if d in members))]
        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            if color[dep] == GRAY:
                cycle = path[path.index(dep):]
                return _normalize_cycle(cycle)
            if color[dep] == WHITE:
                color[dep] = GRAY
                path.append(dep)
                stack.append(iter(sorted(d for d in edges.get(dep, ()) if d in members)))
    return []


def _normalize_cycle(cycle: List[str]) -> List[str]:
    """Rotate a cycle to start at its lexicographically smallest node.

    This makes the reported cycle independent of where the DFS entered it.
    """
    if not cycle:
        return cycle
    min_idx = min(range(len(cycle)), key=lambda i: cycle[i])
    return cycle[min_idx:] + cycle[:min_idx]
