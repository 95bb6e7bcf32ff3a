from __future__ import annotations

import logging
import math
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .geo_math import haversine_km
from .logging_utils import log_event
from .models import RoadSegment
from .settings import settings

UNKNOWN_ROAD = "Unknown Road"


def node_key(lat: float, lon: float, *, precision: int | None = None) -> str:
    digits = int(settings.node_key_precision if precision is None else precision)
    # "+ 0.0" folds -0.0 into 0.0 so both sides of the meridian/equator share a key.
    return f"{round(float(lat), digits) + 0.0:.{digits}f},{round(float(lon), digits) + 0.0:.{digits}f}"


@dataclass
class Edge:
    to: str
    distance_km: float
    road_name: str
    traffic_multiplier: float = 1.0

    @property
    def weight(self) -> float:
        return self.distance_km * self.traffic_multiplier


@dataclass
class Node:
    id: str
    lat: float
    lon: float
    edges: list[Edge] = field(default_factory=list)


@dataclass(frozen=True)
class GraphBuildStats:
    segments_seen: int
    segments_dropped: int
    node_count: int
    edge_count: int


def _parse_coordinate(raw: object) -> tuple[float, float] | None:
    if not isinstance(raw, (list, tuple)) or len(raw) < 2:
        return None
    lon_raw, lat_raw = raw[0], raw[1]
    if isinstance(lon_raw, bool) or isinstance(lat_raw, bool):
        return None
    try:
        lon = float(lon_raw)
        lat = float(lat_raw)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return lat, lon


def _parse_polyline(polyline: Sequence[object]) -> list[tuple[float, float]] | None:
    coords: list[tuple[float, float]] = []
    for raw in polyline:
        parsed = _parse_coordinate(raw)
        if parsed is None:
            # One unresolved coordinate invalidates the whole segment.
            return None
        coords.append(parsed)
    return coords if len(coords) >= 2 else None


class RoadGraph:
    """Node/edge road graph keyed by canonical coordinate strings.

    Edges are grouped by road name so a traffic update touches one group under
    one lock. Readers never take that lock: a search running next to an update
    may see some roads at the new multiplier and others at the old one, while
    each individual edge stays self-consistent because its weight is derived
    from distance and multiplier on every read.
    """

    def __init__(self, *, precision: int | None = None) -> None:
        self._precision = int(settings.node_key_precision if precision is None else precision)
        self.nodes: dict[str, Node] = {}
        self._edges_by_road: dict[str, list[Edge]] = {}
        self._traffic_lock = threading.Lock()

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def edge_count(self) -> int:
        return sum(len(node.edges) for node in self.nodes.values())

    def key_for(self, lat: float, lon: float) -> str:
        return node_key(lat, lon, precision=self._precision)

    def build(self, segments: Iterable[RoadSegment]) -> GraphBuildStats:
        """Replace the graph with one built from ``segments``.

        Each consecutive coordinate pair becomes a bidirectional edge pair. The
        new maps are assembled privately and swapped in at the end, so readers
        see either the old graph or the complete new one.
        """
        nodes: dict[str, Node] = {}
        edges_by_road: dict[str, list[Edge]] = {}
        seen = 0
        dropped = 0
        for segment in segments:
            seen += 1
            coords = _parse_polyline(segment.polyline)
            if coords is None:
                dropped += 1
                continue
            road_name = (segment.road_name or "").strip() or UNKNOWN_ROAD
            for (lat1, lon1), (lat2, lon2) in zip(coords, coords[1:]):
                from_id = self._resolve_node(nodes, lat1, lon1)
                to_id = self._resolve_node(nodes, lat2, lon2)
                if from_id == to_id:
                    continue
                distance_km = haversine_km(lat1, lon1, lat2, lon2)
                self._link(nodes, edges_by_road, from_id, to_id, distance_km, road_name)
                self._link(nodes, edges_by_road, to_id, from_id, distance_km, road_name)

        with self._traffic_lock:
            self.nodes = nodes
            self._edges_by_road = edges_by_road
        stats = GraphBuildStats(
            segments_seen=seen,
            segments_dropped=dropped,
            node_count=len(nodes),
            edge_count=sum(len(n.edges) for n in nodes.values()),
        )
        if stats.segments_dropped:
            log_event(
                "road_segments_dropped",
                level=logging.WARNING,
                reason_code="invalid_road_segment",
                segments_dropped=stats.segments_dropped,
                segments_seen=stats.segments_seen,
            )
        log_event(
            "road_graph_built",
            segments_seen=stats.segments_seen,
            segments_dropped=stats.segments_dropped,
            node_count=stats.node_count,
            edge_count=stats.edge_count,
        )
        return stats

    def _resolve_node(self, nodes: dict[str, Node], lat: float, lon: float) -> str:
        key = self.key_for(lat, lon)
        if key not in nodes:
            nodes[key] = Node(id=key, lat=lat, lon=lon)
        return key

    @staticmethod
    def _link(
        nodes: dict[str, Node],
        edges_by_road: dict[str, list[Edge]],
        from_id: str,
        to_id: str,
        distance_km: float,
        road_name: str,
    ) -> Edge:
        edge = Edge(to=to_id, distance_km=max(0.0, float(distance_km)), road_name=road_name)
        nodes[from_id].edges.append(edge)
        edges_by_road.setdefault(road_name, []).append(edge)
        return edge

    def add_node(self, lat: float, lon: float) -> str:
        return self._resolve_node(self.nodes, lat, lon)

    def add_edge(
        self,
        from_id: str,
        to_id: str,
        distance_km: float,
        road_name: str = UNKNOWN_ROAD,
        *,
        bidirectional: bool = True,
    ) -> bool:
        """Link two existing nodes; unknown endpoints are rejected, never half-inserted."""
        if from_id not in self.nodes or to_id not in self.nodes:
            return False
        with self._traffic_lock:
            self._link(self.nodes, self._edges_by_road, from_id, to_id, distance_km, road_name)
            if bidirectional:
                self._link(self.nodes, self._edges_by_road, to_id, from_id, distance_km, road_name)
        return True

    def update_traffic(self, road_name: str, multiplier: float) -> int:
        """Apply ``multiplier`` to every edge named ``road_name``.

        Matching is by exact road name, not position: every edge sharing the
        name anywhere in the graph is re-weighted.
        """
        try:
            value = float(multiplier)
        except (TypeError, ValueError):
            return 0
        if not math.isfinite(value):
            return 0
        value = max(1.0, value)
        with self._traffic_lock:
            edges = self._edges_by_road.get(road_name, ())
            for edge in edges:
                edge.traffic_multiplier = value
            return len(edges)

    def edges_for_road(self, road_name: str) -> tuple[Edge, ...]:
        return tuple(self._edges_by_road.get(road_name, ()))

    def road_names(self) -> tuple[str, ...]:
        return tuple(self._edges_by_road)

    def edge_between(self, from_id: str, to_id: str) -> Edge | None:
        node = self.nodes.get(from_id)
        if node is None:
            return None
        best: Edge | None = None
        for edge in node.edges:
            if edge.to != to_id:
                continue
            if best is None or edge.weight < best.weight:
                best = edge
        return best
