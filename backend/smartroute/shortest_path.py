from __future__ import annotations

import heapq
from collections.abc import Callable
from dataclasses import dataclass
from math import inf

from .road_graph import Edge, RoadGraph


@dataclass(frozen=True)
class PathResult:
    nodes: tuple[str, ...]
    cost: float

    @property
    def found(self) -> bool:
        return len(self.nodes) >= 2


NO_PATH = PathResult(nodes=(), cost=inf)


def dijkstra_shortest_path(
    graph: RoadGraph,
    start: str,
    goal: str,
    *,
    explored_counter: list[int] | None = None,
    weight: Callable[[Edge], float] | None = None,
) -> PathResult:
    """Lowest-weight node sequence from ``start`` to ``goal``.

    The frontier uses lazy deletion: a node may be pushed several times and
    stale entries are skipped once the node is visited. ``weight`` replaces the
    traffic-weighted edge cost, e.g. plain distance for a free-flow baseline.
    Returns ``NO_PATH`` when the goal is unreachable or start and goal coincide.
    """
    nodes = graph.nodes
    if start not in nodes or goal not in nodes:
        return NO_PATH
    best: dict[str, float] = {start: 0.0}
    previous: dict[str, str] = {}
    visited: set[str] = set()
    heap: list[tuple[float, str]] = [(0.0, start)]
    while heap:
        dist, current = heapq.heappop(heap)
        if current in visited:
            continue
        visited.add(current)
        if explored_counter is not None:
            explored_counter[0] += 1
        if current == goal:
            break
        node = nodes.get(current)
        if node is None:
            continue
        for edge in node.edges:
            if edge.to in visited:
                continue
            candidate = dist + (edge.weight if weight is None else weight(edge))
            if candidate < best.get(edge.to, inf):
                best[edge.to] = candidate
                previous[edge.to] = current
                heapq.heappush(heap, (candidate, edge.to))

    if goal not in best:
        return NO_PATH
    path = [goal]
    while path[-1] != start:
        prior = previous.get(path[-1])
        if prior is None:
            return NO_PATH
        path.append(prior)
    path.reverse()
    if len(path) < 2:
        return NO_PATH
    return PathResult(nodes=tuple(path), cost=best[goal])
