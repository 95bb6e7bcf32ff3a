from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import UTC, datetime
from typing import Literal

from .geo_math import haversine_km, interpolate, travel_minutes
from .logging_utils import log_event
from .models import GraphStatus, LatLng, RoutePoint, RouteRequest, RouteResponse, TrafficSample, Waypoint
from .road_data import RoadSegmentSource, TrafficSource
from .road_graph import Node, RoadGraph
from .route_store import RouteStore, StoredRoute, build_waypoints, new_route_store
from .settings import settings
from .shortest_path import dijkstra_shortest_path

GraphState = Literal["unbuilt", "building", "ready"]

START_INSTRUCTION = "Start your journey"
HEAD_INSTRUCTION = "Head towards destination"
ARRIVAL_INSTRUCTION = "You have arrived at your destination"


def _iso_utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def straight_line_route(start: LatLng, end: LatLng) -> tuple[RouteResponse, list[str]]:
    """Degraded-mode route: evenly interpolated points on the straight line."""
    segments = max(1, int(settings.fallback_route_segments))
    path = []
    for idx in range(segments + 1):
        lat, lon = interpolate(start.lat, start.lon, end.lat, end.lon, idx / segments)
        path.append(RoutePoint(lat=lat, lon=lon))
    distance_km = haversine_km(start.lat, start.lon, end.lat, end.lon)
    route = RouteResponse(
        path=path,
        total_distance_km=distance_km,
        estimated_time_min=travel_minutes(distance_km, settings.fallback_speed_kmh),
        instructions=[START_INSTRUCTION, HEAD_INSTRUCTION, ARRIVAL_INSTRUCTION],
        has_traffic_detours=False,
        fallback_used=True,
    )
    return route, []


def route_response_from_path(graph: RoadGraph, path_nodes: tuple[str, ...]) -> tuple[RouteResponse, list[str]]:
    """Turn a node sequence into a response plus the road name of each leg."""
    points = [RoutePoint(lat=graph.nodes[n].lat, lon=graph.nodes[n].lon) for n in path_nodes if n in graph.nodes]
    total_km = 0.0
    minutes = 0.0
    detour = False
    leg_names: list[str] = []
    for from_id, to_id in zip(path_nodes, path_nodes[1:]):
        edge = graph.edge_between(from_id, to_id)
        if edge is None:
            leg_names.append("")
            continue
        # Snapshot once; a concurrent traffic update must not split one leg across two readings.
        multiplier = edge.traffic_multiplier
        total_km += edge.distance_km
        minutes += travel_minutes(edge.distance_km, settings.fallback_speed_kmh) * multiplier
        if multiplier > settings.detour_multiplier_threshold:
            detour = True
        leg_names.append(edge.road_name)

    instructions = [START_INSTRUCTION]
    # One line per intermediate node whose outgoing leg has a road name.
    for leg_name in leg_names[1:]:
        if leg_name:
            instructions.append(f"Continue on {leg_name}")
    instructions.append(ARRIVAL_INSTRUCTION)

    route = RouteResponse(
        path=points,
        total_distance_km=total_km,
        estimated_time_min=minutes,
        instructions=instructions,
        has_traffic_detours=detour,
        fallback_used=False,
    )
    return route, leg_names


class RoutePlanner:
    """Owns the lazily built road graph and answers shortest-path requests.

    The graph moves unbuilt -> building -> ready exactly once per build;
    ``ensure_graph`` is the only way a build starts.
    """

    def __init__(
        self,
        *,
        road_source: RoadSegmentSource,
        traffic_source: TrafficSource,
        route_store: RouteStore | None = None,
    ) -> None:
        self._road_source = road_source
        self._traffic_source = traffic_source
        self.routes = route_store if route_store is not None else new_route_store()

        self._build_lock = threading.Lock()
        self._state: GraphState = "unbuilt"
        self._graph = RoadGraph()
        self._built_at_utc: str | None = None

        self._traffic_lock = threading.Lock()
        self._traffic_roads: dict[str, float] = {}
        self._last_traffic_refresh_utc: str | None = None
        self._last_traffic_sample_count = 0

    @property
    def state(self) -> GraphState:
        return self._state

    def ensure_graph(self) -> RoadGraph:
        if self._state == "ready":
            return self._graph
        with self._build_lock:
            if self._state == "ready":
                return self._graph
            self._state = "building"
            t0 = time.perf_counter()
            try:
                segments = list(self._road_source())
            except Exception as exc:
                log_event(
                    "road_source_failed",
                    level=logging.WARNING,
                    reason_code="road_source_unavailable",
                    error_type=type(exc).__name__,
                    error_message=str(exc).strip() or type(exc).__name__,
                )
                segments = []
            graph = RoadGraph()
            try:
                graph.build(segments)
            except Exception:
                self._state = "unbuilt"
                raise
            self._graph = graph
            self._built_at_utc = _iso_utc_now()
            with self._traffic_lock:
                self._traffic_roads = {}
            self._state = "ready"
            if graph.node_count == 0:
                log_event(
                    "road_graph_empty",
                    level=logging.WARNING,
                    reason_code="routing_graph_unavailable",
                )
            log_event(
                "road_graph_ready",
                node_count=graph.node_count,
                edge_count=graph.edge_count,
                duration_ms=round((time.perf_counter() - t0) * 1000, 2),
            )
        return self._graph

    def refresh_graph(self) -> RoadGraph:
        """Discard the current graph and rebuild it through ``ensure_graph``."""
        with self._build_lock:
            self._state = "unbuilt"
        return self.ensure_graph()

    def refresh_traffic(self) -> int:
        """Apply the collaborator's current traffic to the graph.

        Roads that had traffic on the previous refresh but no longer have a
        current sample go back to a multiplier of 1.0. Returns the number of
        edges touched; failures are logged and count as "no traffic data".
        """
        graph = self.ensure_graph()
        try:
            samples = list(self._traffic_source())
        except Exception as exc:
            log_event(
                "traffic_refresh_failed",
                level=logging.WARNING,
                reason_code="traffic_source_unavailable",
                error_type=type(exc).__name__,
                error_message=str(exc).strip() or type(exc).__name__,
            )
            return 0

        latest: dict[str, TrafficSample] = {}
        for sample in samples:
            prior = latest.get(sample.road_name)
            if prior is None or sample.reported_at >= prior.reported_at:
                latest[sample.road_name] = sample

        touched = 0
        with self._traffic_lock:
            for road_name in set(self._traffic_roads) - set(latest):
                touched += graph.update_traffic(road_name, 1.0)
            for road_name, sample in latest.items():
                touched += graph.update_traffic(road_name, sample.multiplier)
            self._traffic_roads = {name: s.multiplier for name, s in latest.items()}
            self._last_traffic_refresh_utc = _iso_utc_now()
            self._last_traffic_sample_count = len(samples)
        return touched

    def find_nearest_node(self, lat: float, lon: float) -> Node | None:
        graph = self.ensure_graph()
        nearest: Node | None = None
        best_km = float("inf")
        for node in graph.nodes.values():
            dist = haversine_km(lat, lon, node.lat, node.lon)
            if dist < best_km:
                best_km = dist
                nearest = node
        return nearest

    def find_path(self, request: RouteRequest) -> RouteResponse:
        """Traffic-weighted shortest route; falls back to a straight line, never raises."""
        request_id = str(uuid.uuid4())
        t0 = time.perf_counter()
        reason = "ok"
        explored = [0]
        try:
            graph = self.ensure_graph()
            self.refresh_traffic()
            if graph.node_count == 0:
                reason = "routing_graph_unavailable"
                route, leg_names = straight_line_route(request.start, request.end)
            else:
                start_node = self.find_nearest_node(request.start.lat, request.start.lon)
                end_node = self.find_nearest_node(request.end.lat, request.end.lon)
                if start_node is None or end_node is None:
                    reason = "routing_graph_coverage_gap"
                    route, leg_names = straight_line_route(request.start, request.end)
                else:
                    path = dijkstra_shortest_path(graph, start_node.id, end_node.id, explored_counter=explored)
                    if not path.found:
                        reason = "routing_graph_no_path"
                        route, leg_names = straight_line_route(request.start, request.end)
                    else:
                        route, leg_names = route_response_from_path(graph, path.nodes)
                        if not route.has_traffic_detours and self._has_slow_roads():
                            route.has_traffic_detours = self._avoided_traffic(
                                graph, start_node.id, end_node.id, route.total_distance_km
                            )
        except Exception as exc:  # pragma: no cover - route requests must always get a route
            reason = "route_compute_failed"
            log_event(
                "route_compute_failed",
                level=logging.ERROR,
                request_id=request_id,
                error_type=type(exc).__name__,
                error_message=str(exc).strip() or type(exc).__name__,
            )
            route, leg_names = straight_line_route(request.start, request.end)

        route.route_id = request_id
        self._remember(route, leg_names)
        log_event(
            "route_request",
            request_id=request_id,
            origin=request.start.model_dump(),
            destination=request.end.model_dump(),
            avoid_traffic=request.avoid_traffic,
            fallback_used=route.fallback_used,
            fallback_reason=reason,
            path_points=len(route.path),
            distance_km=round(route.total_distance_km, 4),
            estimated_time_min=round(route.estimated_time_min, 2),
            has_traffic_detours=route.has_traffic_detours,
            explored_nodes=explored[0],
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return route

    def _has_slow_roads(self) -> bool:
        with self._traffic_lock:
            return any(m > settings.detour_multiplier_threshold for m in self._traffic_roads.values())

    @staticmethod
    def _avoided_traffic(graph: RoadGraph, start_id: str, end_id: str, routed_km: float) -> bool:
        """True when the free-flow shortest route is shorter than the one traffic forced."""
        free_flow = dijkstra_shortest_path(graph, start_id, end_id, weight=lambda edge: edge.distance_km)
        return free_flow.found and free_flow.cost < routed_km - 1e-9

    def _remember(self, route: RouteResponse, leg_names: list[str]) -> None:
        road_names: list[str] = []
        for name in leg_names:
            if name and name not in road_names:
                road_names.append(name)
        self.routes.set(
            route.route_id,
            StoredRoute(
                route=route,
                waypoints=build_waypoints(route, leg_names),
                road_names=tuple(road_names),
            ),
        )

    def stored_route(self, route_id: str) -> StoredRoute:
        return self.routes.require(route_id)

    def get_route_waypoints(self, route_id: str) -> list[Waypoint]:
        return list(self.routes.require(route_id).waypoints)

    def graph_status(self) -> GraphStatus:
        state = self._state
        graph = self._graph
        with self._traffic_lock:
            refreshed = self._last_traffic_refresh_utc
            sample_count = self._last_traffic_sample_count
        return GraphStatus(
            state=state,
            node_count=graph.node_count if state == "ready" else 0,
            edge_count=graph.edge_count if state == "ready" else 0,
            built_at_utc=self._built_at_utc if state == "ready" else None,
            last_traffic_refresh_utc=refreshed,
            last_traffic_sample_count=sample_count,
        )
