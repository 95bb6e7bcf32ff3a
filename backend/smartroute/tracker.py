from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime, timedelta
from threading import Lock

from .errors import NoActiveRouteError, RouteNotFoundError
from .geo_math import eta_s, haversine_km, m_to_km, mps_to_kmh
from .logging_utils import log_event
from .models import (
    ActiveRoute,
    LatLng,
    LocationUpdate,
    RouteProgress,
    RouteRequest,
    RouteResponse,
    TrafficSample,
    as_utc,
)
from .notifications import NotificationHub
from .route_planner import RoutePlanner
from .settings import settings

TrafficAheadFn = Callable[[Iterable[str]], Sequence[TrafficSample]]

RECALCULATION_REASON = "Traffic detected ahead"
HISTORY_DEFAULT_SPAN = timedelta(hours=24)


class ActiveRouteTracker:
    """Per-user route sessions: progress, waypoint arrival and traffic detours.

    Distances are kilometres throughout. Client speeds arrive in m/s and the
    waypoint threshold is configured in metres; both are converted on entry.
    """

    def __init__(
        self,
        *,
        planner: RoutePlanner,
        traffic_ahead: TrafficAheadFn,
        notifier: NotificationHub,
        history_max: int | None = None,
    ) -> None:
        self._planner = planner
        self._traffic_ahead = traffic_ahead
        self._notifier = notifier
        self._lock = Lock()
        self._sessions: dict[str, ActiveRoute] = {}
        self._latest: dict[str, LocationUpdate] = {}
        self._history_max = max(1, int(settings.location_history_max if history_max is None else history_max))
        self._history: dict[str, deque[LocationUpdate]] = {}
        self._progress_at: dict[str, datetime] = {}

    def start_tracking(self, user_id: str, route_id: str) -> ActiveRoute:
        stored = self._planner.stored_route(route_id)
        path = stored.route.path
        if not path:
            raise RouteNotFoundError(route_id)
        session = ActiveRoute(
            user_id=user_id,
            route_id=route_id,
            start=LatLng(lat=path[0].lat, lon=path[0].lon),
            destination=LatLng(lat=path[-1].lat, lon=path[-1].lon),
            total_distance_km=stored.route.total_distance_km,
            remaining_distance_km=stored.route.total_distance_km,
            current_waypoint_index=0,
            road_names=list(stored.road_names),
        )
        with self._lock:
            self._sessions[user_id] = session
            self._progress_at.pop(user_id, None)
        self._notifier.publish(user_id, "tracking_started", {"user_id": user_id, "route_id": route_id})
        log_event("tracking_started", user_id=user_id, route_id=route_id)
        return session

    def stop_tracking(self, user_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(user_id, None)
            self._progress_at.pop(user_id, None)
        if session is None:
            return False
        self._notifier.publish(user_id, "tracking_stopped", {"user_id": user_id, "route_id": session.route_id})
        log_event("tracking_stopped", user_id=user_id, route_id=session.route_id)
        return True

    def get_active_route(self, user_id: str) -> ActiveRoute:
        with self._lock:
            session = self._sessions.get(user_id)
        if session is None:
            raise NoActiveRouteError(user_id)
        return session.model_copy(deep=True)

    def latest_location(self, user_id: str) -> LocationUpdate | None:
        with self._lock:
            return self._latest.get(user_id)

    def _replace_if_current(self, expected_route_id: str, session: ActiveRoute) -> bool:
        # A session stopped or replaced meanwhile must not be resurrected.
        with self._lock:
            current = self._sessions.get(session.user_id)
            if current is None or current.route_id != expected_route_id:
                return False
            self._sessions[session.user_id] = session
            return True

    def check_waypoint(self, position: LatLng, route: ActiveRoute) -> int:
        """Index of the first waypoint, at or after the recorded one, within the arrival radius.

        Never returns less than ``route.current_waypoint_index``.
        """
        try:
            waypoints = self._planner.get_route_waypoints(route.route_id)
        except RouteNotFoundError:
            return route.current_waypoint_index
        threshold_km = m_to_km(settings.waypoint_threshold_m)
        for waypoint in waypoints[route.current_waypoint_index:]:
            if haversine_km(position.lat, position.lon, waypoint.lat, waypoint.lon) > threshold_km:
                continue
            if waypoint.index != route.current_waypoint_index:
                following = waypoints[waypoint.index + 1] if waypoint.index + 1 < len(waypoints) else None
                self._notifier.publish(
                    route.user_id,
                    "waypoint_reached",
                    {
                        "route_id": route.route_id,
                        "waypoint_index": waypoint.index,
                        "waypoint_name": waypoint.name,
                        "next_waypoint": following.model_dump() if following is not None else None,
                    },
                )
            return waypoint.index
        return route.current_waypoint_index

    def progress(self, position: LatLng, route: ActiveRoute, *, speed_kmh: float | None = None) -> RouteProgress:
        covered_km = haversine_km(route.start.lat, route.start.lon, position.lat, position.lon)
        remaining_km = max(0.0, route.total_distance_km - covered_km)
        if route.total_distance_km > 0.0:
            percent = min(100.0, max(0.0, covered_km / route.total_distance_km * 100.0))
        else:
            percent = 100.0
        return RouteProgress(
            route_id=route.route_id,
            user_id=route.user_id,
            distance_covered_km=covered_km,
            distance_remaining_km=remaining_km,
            percent_complete=percent,
            current_waypoint_index=self.check_waypoint(position, route),
            eta_remaining_s=eta_s(remaining_km, speed_kmh, default_speed_kmh=settings.default_cruise_speed_kmh),
        )

    def maybe_recalculate(self, position: LatLng, route: ActiveRoute) -> RouteResponse | None:
        """Swap in a route from ``position`` if it is strictly shorter than what remains."""
        alternative = self._planner.find_path(RouteRequest(start=position, end=route.destination))
        if not alternative.total_distance_km < route.remaining_distance_km:
            log_event(
                "route_recalculation_rejected",
                user_id=route.user_id,
                route_id=route.route_id,
                alternative_route_id=alternative.route_id,
                alternative_distance_km=round(alternative.total_distance_km, 4),
                remaining_distance_km=round(route.remaining_distance_km, 4),
            )
            return None

        try:
            road_names = list(self._planner.stored_route(alternative.route_id).road_names)
        except RouteNotFoundError:
            road_names = []
        replacement = ActiveRoute(
            user_id=route.user_id,
            route_id=alternative.route_id,
            start=position,
            destination=route.destination,
            total_distance_km=alternative.total_distance_km,
            remaining_distance_km=alternative.total_distance_km,
            current_waypoint_index=0,
            road_names=road_names,
        )
        if not self._replace_if_current(route.route_id, replacement):
            return None
        self._notifier.publish(
            route.user_id,
            "route_recalculated",
            {
                "reason": RECALCULATION_REASON,
                "previous_route_id": route.route_id,
                "route": alternative.model_dump(mode="json"),
            },
        )
        log_event(
            "route_recalculated",
            user_id=route.user_id,
            previous_route_id=route.route_id,
            route_id=alternative.route_id,
            alternative_distance_km=round(alternative.total_distance_km, 4),
            remaining_distance_km=round(route.remaining_distance_km, 4),
        )
        return alternative

    def _roads_ahead(self, session: ActiveRoute) -> list[str]:
        """Road names from the recorded waypoint onward; passed roads are not "ahead"."""
        try:
            waypoints = self._planner.get_route_waypoints(session.route_id)
        except RouteNotFoundError:
            return list(session.road_names)
        known = set(session.road_names)
        ahead: list[str] = []
        for waypoint in waypoints[session.current_waypoint_index:]:
            if waypoint.name in known and waypoint.name not in ahead:
                ahead.append(waypoint.name)
        return ahead

    def _commit_progress(self, session: ActiveRoute, progress: RouteProgress, reported_at: datetime) -> RouteProgress | None:
        # Compare-and-set against whatever landed while this update was computed:
        # the waypoint index only moves forward and remaining distance follows the newest report.
        with self._lock:
            current = self._sessions.get(session.user_id)
            if current is None or current.route_id != session.route_id:
                return None
            index = max(current.current_waypoint_index, progress.current_waypoint_index)
            changes: dict[str, object] = {"current_waypoint_index": index}
            last = self._progress_at.get(session.user_id)
            if last is None or reported_at >= last:
                changes["remaining_distance_km"] = progress.distance_remaining_km
                self._progress_at[session.user_id] = reported_at
            self._sessions[session.user_id] = current.model_copy(update=changes)
        if index == progress.current_waypoint_index:
            return progress
        return progress.model_copy(update={"current_waypoint_index": index})

    def handle_location_update(self, update: LocationUpdate, *, record_position: bool = True) -> RouteProgress | None:
        """Record a position; for tracked users, detour on traffic ahead and report progress.

        ``record_position=False`` re-evaluates an already recorded position
        without touching the latest-location and history state.
        """
        with self._lock:
            if record_position:
                self._record(update)
            session = self._sessions.get(update.user_id)
        if session is None:
            return None

        position = update.position
        samples = self._traffic_ahead(self._roads_ahead(session))
        if samples and self.maybe_recalculate(position, session) is not None:
            with self._lock:
                replaced = self._sessions.get(update.user_id)
            if replaced is None:
                return None
            session = replaced

        computed = self.progress(position, session, speed_kmh=mps_to_kmh(update.speed_mps))
        progress = self._commit_progress(session, computed, update.timestamp)
        if progress is None:
            return None
        self._notifier.publish(update.user_id, "route_progress", progress.model_dump(mode="json"))
        return progress

    def _record(self, update: LocationUpdate) -> None:
        # Caller holds self._lock.
        latest = self._latest.get(update.user_id)
        if latest is None or update.timestamp >= latest.timestamp:
            self._latest[update.user_id] = update
        history = self._history.get(update.user_id)
        if history is None:
            history = deque(maxlen=self._history_max)
            self._history[update.user_id] = history
        history.append(update)

    def location_history(
        self,
        user_id: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[LocationUpdate]:
        """Recorded positions with ``since <= timestamp <= until``, oldest first.

        Defaults to the trailing 24 hours.
        """
        now = datetime.now(UTC)
        upper = as_utc(until) if until is not None else now
        lower = as_utc(since) if since is not None else now - HISTORY_DEFAULT_SPAN
        with self._lock:
            recorded = list(self._history.get(user_id, ()))
        return sorted(
            (u for u in recorded if lower <= u.timestamp <= upper),
            key=lambda u: u.timestamp,
        )

    def handle_traffic_report(self, sample: TrafficSample) -> list[str]:
        """Alert tracked users near a new report and re-evaluate their routes."""
        lon, lat = sample.coordinates
        radius_km = m_to_km(settings.traffic_alert_radius_m)
        with self._lock:
            nearby = [
                loc
                for loc in self._latest.values()
                if loc.user_id in self._sessions and haversine_km(lat, lon, loc.lat, loc.lon) <= radius_km
            ]
        affected: list[str] = []
        for location in nearby:
            self._notifier.publish(location.user_id, "traffic_alert", sample.model_dump(mode="json"))
            self.handle_location_update(location, record_position=False)
            affected.append(location.user_id)
        log_event(
            "traffic_alert_dispatched",
            sample_id=sample.id,
            road_name=sample.road_name,
            affected_users=len(affected),
        )
        return affected
