from __future__ import annotations

import threading
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

import pytest

from smartroute.errors import NoActiveRouteError, RouteNotFoundError
from smartroute.models import ActiveRoute, LatLng, LocationUpdate, RoadSegment, RouteRequest, TrafficReport, TrafficLevel
from smartroute.notifications import NotificationHub
from smartroute.road_data import static_road_source
from smartroute.route_planner import RoutePlanner
from smartroute.settings import settings
from smartroute.tracker import ActiveRouteTracker
from smartroute.traffic_store import TrafficStore

# Straight road along the equator, ~1.11 km between consecutive points.
MAIN_ROAD = RoadSegment(
    polyline=[(0.0, 0.0), (0.01, 0.0), (0.02, 0.0), (0.03, 0.0)],
    road_name="Main Road",
)

START = LatLng(lat=0.0, lon=0.0)
END = LatLng(lat=0.0, lon=0.03)


@pytest.fixture()
def rig() -> tuple[ActiveRouteTracker, RoutePlanner, TrafficStore, NotificationHub]:
    traffic = TrafficStore()
    planner = RoutePlanner(road_source=static_road_source([MAIN_ROAD]), traffic_source=traffic.list_current)
    hub = NotificationHub()
    tracker = ActiveRouteTracker(planner=planner, traffic_ahead=traffic.traffic_ahead, notifier=hub)
    return tracker, planner, traffic, hub


def _track(tracker: ActiveRouteTracker, planner: RoutePlanner, user_id: str = "driver-1") -> ActiveRoute:
    route = planner.find_path(RouteRequest(start=START, end=END))
    return tracker.start_tracking(user_id, route.route_id)


def test_start_tracking_builds_session_from_stored_route(rig) -> None:
    tracker, planner, _traffic, hub = rig
    session = _track(tracker, planner)

    assert (session.start.lat, session.start.lon) == (0.0, 0.0)
    assert (session.destination.lat, session.destination.lon) == (0.0, 0.03)
    assert session.remaining_distance_km == session.total_distance_km == pytest.approx(3.3359, abs=0.001)
    assert session.current_waypoint_index == 0
    assert session.road_names == ["Main Road"]
    assert [n.event for n in hub.drain("driver-1")] == ["tracking_started"]


def test_start_tracking_unknown_route_raises(rig) -> None:
    tracker, _planner, _traffic, _hub = rig
    with pytest.raises(RouteNotFoundError):
        tracker.start_tracking("driver-1", "no-such-route")


def test_missing_session_is_a_distinct_condition(rig) -> None:
    tracker, planner, _traffic, hub = rig
    with pytest.raises(NoActiveRouteError) as exc:
        tracker.get_active_route("ghost")
    assert exc.value.reason_code == "no_active_route"

    assert tracker.stop_tracking("ghost") is False
    _track(tracker, planner)
    hub.drain("driver-1")
    assert tracker.stop_tracking("driver-1") is True
    assert [n.event for n in hub.drain("driver-1")] == ["tracking_stopped"]
    with pytest.raises(NoActiveRouteError):
        tracker.get_active_route("driver-1")


def test_location_update_without_session_only_records_position(rig) -> None:
    tracker, _planner, _traffic, hub = rig
    update = LocationUpdate(user_id="walker", lat=0.0, lon=0.005)

    assert tracker.handle_location_update(update) is None
    assert tracker.latest_location("walker") == update
    assert tracker.latest_location("nobody") is None
    assert hub.pending("walker") == 0


def test_progress_reports_distance_eta_and_waypoint(rig) -> None:
    tracker, planner, _traffic, hub = rig
    session = _track(tracker, planner)
    hub.drain("driver-1")

    progress = tracker.handle_location_update(LocationUpdate(user_id="driver-1", lat=0.0, lon=0.01, speed_mps=10.0))

    assert progress is not None
    assert progress.distance_covered_km == pytest.approx(1.112, abs=0.001)
    assert progress.distance_remaining_km == pytest.approx(session.total_distance_km - progress.distance_covered_km)
    assert progress.percent_complete == pytest.approx(100.0 / 3.0, abs=0.01)
    assert progress.current_waypoint_index == 1
    # 10 m/s is 36 km/h.
    assert progress.eta_remaining_s == pytest.approx(progress.distance_remaining_km / 36.0 * 3600.0)

    events = hub.drain("driver-1")
    assert [n.event for n in events] == ["waypoint_reached", "route_progress"]
    assert events[0].payload["waypoint_index"] == 1
    assert events[0].payload["waypoint_name"] == "Main Road"

    stored = tracker.get_active_route("driver-1")
    assert stored.current_waypoint_index == 1
    assert stored.remaining_distance_km == pytest.approx(progress.distance_remaining_km)


def test_missing_speed_uses_cruise_default(rig) -> None:
    tracker, planner, _traffic, _hub = rig
    _track(tracker, planner)
    progress = tracker.handle_location_update(LocationUpdate(user_id="driver-1", lat=0.0, lon=0.01, speed_mps=0.0))
    assert progress is not None
    expected = progress.distance_remaining_km / settings.default_cruise_speed_kmh * 3600.0
    assert progress.eta_remaining_s == pytest.approx(expected)


def test_waypoint_index_never_regresses(rig) -> None:
    tracker, planner, _traffic, hub = rig
    _track(tracker, planner)

    reached = tracker.handle_location_update(LocationUpdate(user_id="driver-1", lat=0.0, lon=0.02))
    assert reached is not None and reached.current_waypoint_index == 2

    hub.drain("driver-1")
    back = tracker.handle_location_update(LocationUpdate(user_id="driver-1", lat=0.0, lon=0.0))
    assert back is not None
    assert back.current_waypoint_index == 2
    assert [n.event for n in hub.drain("driver-1")] == ["route_progress"]


def test_progress_clamps_beyond_destination_and_zero_length_routes(rig) -> None:
    tracker, _planner, _traffic, _hub = rig
    route = ActiveRoute(
        user_id="u",
        route_id="unstored",
        start=START,
        destination=END,
        total_distance_km=1.0,
        remaining_distance_km=1.0,
        current_waypoint_index=3,
    )
    far = tracker.progress(LatLng(lat=0.0, lon=0.5), route)
    assert far.distance_remaining_km == 0.0
    assert far.percent_complete == 100.0
    assert far.current_waypoint_index == 3

    empty = route.model_copy(update={"total_distance_km": 0.0, "remaining_distance_km": 0.0})
    assert tracker.progress(START, empty).percent_complete == 100.0


def test_recalculation_requires_a_strictly_shorter_alternative(rig) -> None:
    tracker, planner, _traffic, hub = rig
    session = _track(tracker, planner)
    hub.drain("driver-1")
    position = LatLng(lat=0.0, lon=0.01)
    alternative_km = planner.find_path(RouteRequest(start=position, end=END)).total_distance_km

    equal = session.model_copy(update={"remaining_distance_km": alternative_km})
    assert tracker.maybe_recalculate(position, equal) is None
    assert tracker.get_active_route("driver-1").route_id == session.route_id

    longer = session.model_copy(update={"remaining_distance_km": alternative_km - 0.01})
    assert tracker.maybe_recalculate(position, longer) is None
    assert hub.pending("driver-1") == 0

    shorter = session.model_copy(update={"remaining_distance_km": alternative_km + 0.5})
    replacement = tracker.maybe_recalculate(position, shorter)
    assert replacement is not None

    current = tracker.get_active_route("driver-1")
    assert current.route_id == replacement.route_id
    assert current.start == position
    assert current.current_waypoint_index == 0
    assert current.remaining_distance_km == pytest.approx(alternative_km)
    events = hub.drain("driver-1")
    assert [n.event for n in events] == ["route_recalculated"]
    assert events[0].payload["reason"] == "Traffic detected ahead"


def test_recalculation_does_not_resurrect_a_stopped_session(rig) -> None:
    tracker, planner, _traffic, _hub = rig
    session = _track(tracker, planner)
    tracker.stop_tracking("driver-1")

    stale = session.model_copy(update={"remaining_distance_km": 100.0})
    assert tracker.maybe_recalculate(LatLng(lat=0.0, lon=0.01), stale) is None
    with pytest.raises(NoActiveRouteError):
        tracker.get_active_route("driver-1")


def test_traffic_ahead_triggers_recalculation_check(rig) -> None:
    tracker, planner, traffic, hub = rig
    session = _track(tracker, planner)
    hub.drain("driver-1")
    traffic.report(TrafficReport(road_name="Main Road", traffic_level=TrafficLevel.HEAVY, lat=0.0, lon=0.02))

    first = tracker.handle_location_update(LocationUpdate(user_id="driver-1", lat=0.0, lon=0.01))

    # The session still holds the full route length, so the remainder from here is shorter.
    assert first is not None
    rerouted = tracker.get_active_route("driver-1")
    assert rerouted.route_id != session.route_id
    assert first.route_id == rerouted.route_id
    assert first.distance_covered_km == 0.0
    assert [n.event for n in hub.drain("driver-1")] == ["route_recalculated", "route_progress"]

    # Same spot again: the alternative now equals the remainder and is rejected.
    second = tracker.handle_location_update(LocationUpdate(user_id="driver-1", lat=0.0, lon=0.01))
    assert second is not None
    assert tracker.get_active_route("driver-1").route_id == rerouted.route_id
    assert [n.event for n in hub.drain("driver-1")] == ["route_progress"]


def test_traffic_report_alerts_only_nearby_users(rig) -> None:
    tracker, planner, traffic, hub = rig
    _track(tracker, planner, "near")
    tracker.handle_location_update(LocationUpdate(user_id="near", lat=0.0, lon=0.01))
    tracker.handle_location_update(LocationUpdate(user_id="far", lat=1.0, lon=1.0))
    tracker.handle_location_update(LocationUpdate(user_id="idle", lat=0.0, lon=0.015))
    hub.drain("near")

    sample = traffic.report(TrafficReport(road_name="Main Road", traffic_level=TrafficLevel.MODERATE, lat=0.0, lon=0.02))
    affected = tracker.handle_traffic_report(sample)

    assert affected == ["near"]
    events = hub.drain("near")
    assert events[0].event == "traffic_alert"
    assert events[0].payload["road_name"] == "Main Road"
    assert events[-1].event == "route_progress"
    assert hub.pending("far") == 0
    assert hub.pending("idle") == 0


def test_interleaved_updates_never_move_the_waypoint_backwards() -> None:
    traffic = TrafficStore()
    planner = RoutePlanner(road_source=static_road_source([MAIN_ROAD]), traffic_source=traffic.list_current)
    entered = threading.Event()
    release = threading.Event()

    def _slow_traffic_ahead(road_names: Iterable[str]) -> list:
        if threading.current_thread().name == "behind":
            entered.set()
            release.wait(5)
        return traffic.traffic_ahead(road_names)

    tracker = ActiveRouteTracker(planner=planner, traffic_ahead=_slow_traffic_ahead, notifier=NotificationHub())
    _track(tracker, planner)
    t0 = datetime.now(UTC)
    results: list = []
    behind = threading.Thread(
        target=lambda: results.append(
            tracker.handle_location_update(LocationUpdate(user_id="driver-1", lat=0.0, lon=0.0, timestamp=t0))
        ),
        name="behind",
    )
    behind.start()
    assert entered.wait(5)

    ahead = tracker.handle_location_update(
        LocationUpdate(user_id="driver-1", lat=0.0, lon=0.02, timestamp=t0 + timedelta(seconds=5))
    )
    release.set()
    behind.join(5)

    assert ahead is not None and ahead.current_waypoint_index == 2
    stored = tracker.get_active_route("driver-1")
    assert stored.current_waypoint_index == 2
    # Remaining distance follows the newer report, not the one that finished last.
    assert stored.remaining_distance_km == pytest.approx(ahead.distance_remaining_km)
    assert results[0].current_waypoint_index == 2


def test_only_roads_still_ahead_are_checked_for_traffic() -> None:
    traffic = TrafficStore()
    roads = [
        RoadSegment(polyline=[(0.0, 0.0), (0.01, 0.0), (0.02, 0.0)], road_name="West Road"),
        RoadSegment(polyline=[(0.02, 0.0), (0.03, 0.0)], road_name="East Road"),
    ]
    planner = RoutePlanner(road_source=static_road_source(roads), traffic_source=traffic.list_current)
    asked: list[list[str]] = []

    def _recording_traffic_ahead(road_names: Iterable[str]) -> list:
        names = list(road_names)
        asked.append(names)
        return traffic.traffic_ahead(names)

    tracker = ActiveRouteTracker(planner=planner, traffic_ahead=_recording_traffic_ahead, notifier=NotificationHub())
    session = _track(tracker, planner)
    tracker.handle_location_update(LocationUpdate(user_id="driver-1", lat=0.0, lon=0.02))

    traffic.report(TrafficReport(road_name="West Road", traffic_level=TrafficLevel.BLOCKED, lat=0.0, lon=0.005))
    tracker.handle_location_update(LocationUpdate(user_id="driver-1", lat=0.0, lon=0.02))

    assert asked == [["West Road", "East Road"], ["East Road"]]
    assert tracker.get_active_route("driver-1").route_id == session.route_id


def test_location_history_is_bounded_and_windowed(rig) -> None:
    _tracker, planner, traffic, hub = rig
    tracker = ActiveRouteTracker(planner=planner, traffic_ahead=traffic.traffic_ahead, notifier=hub, history_max=3)
    base = datetime.now(UTC) - timedelta(hours=1)
    tracker.handle_location_update(LocationUpdate(user_id="u", lat=0.0, lon=0.0, timestamp=base - timedelta(days=2)))
    for minute, lon in enumerate([0.0, 0.001, 0.002, 0.003, 0.004]):
        tracker.handle_location_update(
            LocationUpdate(user_id="u", lat=0.0, lon=lon, timestamp=base + timedelta(minutes=minute))
        )

    assert [u.lon for u in tracker.location_history("u")] == [0.002, 0.003, 0.004]
    cut = base + timedelta(minutes=3)
    assert [u.lon for u in tracker.location_history("u", since=cut)] == [0.003, 0.004]
    # Naive bounds are read as UTC.
    assert [u.lon for u in tracker.location_history("u", until=cut.replace(tzinfo=None))] == [0.002, 0.003]
    assert tracker.location_history("nobody") == []


def test_traffic_replay_leaves_recorded_positions_alone(rig) -> None:
    tracker, planner, traffic, _hub = rig
    _track(tracker, planner, "near")
    t0 = datetime.now(UTC)
    tracker.handle_location_update(LocationUpdate(user_id="near", lat=0.0, lon=0.005, timestamp=t0 - timedelta(seconds=10)))
    newest = LocationUpdate(user_id="near", lat=0.0, lon=0.01, timestamp=t0)
    tracker.handle_location_update(newest)

    # An older report arriving late does not replace the latest position.
    tracker.handle_location_update(LocationUpdate(user_id="near", lat=0.0, lon=0.0, timestamp=t0 - timedelta(seconds=20)))
    assert tracker.latest_location("near") == newest
    before = len(tracker.location_history("near"))

    sample = traffic.report(TrafficReport(road_name="Main Road", traffic_level=TrafficLevel.HEAVY, lat=0.0, lon=0.02))
    assert tracker.handle_traffic_report(sample) == ["near"]

    assert tracker.latest_location("near") == newest
    assert len(tracker.location_history("near")) == before
