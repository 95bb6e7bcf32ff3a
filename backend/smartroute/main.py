from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from .errors import SmartRouteError, normalize_reason_code
from .logging_utils import log_event
from .models import (
    ActiveRoute,
    GraphStatus,
    LatLng,
    LocationUpdate,
    Notification,
    RouteRequest,
    RouteResponse,
    TrafficReport,
    TrafficSample,
    Waypoint,
)
from .notifications import NotificationHub
from .road_data import geojson_road_source
from .route_planner import RoutePlanner
from .tracker import ActiveRouteTracker
from .traffic_store import TrafficStore


@dataclass
class Services:
    traffic: TrafficStore
    planner: RoutePlanner
    notifications: NotificationHub
    tracker: ActiveRouteTracker


def build_services() -> Services:
    traffic = TrafficStore()
    planner = RoutePlanner(road_source=geojson_road_source(), traffic_source=traffic.list_current)
    notifications = NotificationHub()
    tracker = ActiveRouteTracker(
        planner=planner,
        traffic_ahead=traffic.traffic_ahead,
        notifier=notifications,
    )
    return Services(traffic=traffic, planner=planner, notifications=notifications, tracker=tracker)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.services = build_services()
    yield
    app.state.services = None


app = FastAPI(title="SmartRoute traffic-aware router", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def services(request: Request) -> Services:
    svc: Services | None = getattr(request.app.state, "services", None)  # type: ignore[attr-defined]
    if svc is None:
        raise HTTPException(status_code=503, detail="routing services not initialised")
    return svc


ServicesDep = Annotated[Services, Depends(services)]


def _not_found(e: SmartRouteError) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"reason_code": normalize_reason_code(e.reason_code), "message": e.message},
    )


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


async def _calculate(svc: Services, req: RouteRequest) -> RouteResponse:
    t0 = time.perf_counter()
    route = await asyncio.to_thread(svc.planner.find_path, req)
    log_event(
        "route_api_request",
        route_id=route.route_id,
        fallback_used=route.fallback_used,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return route


@app.get("/api/routes", response_model=RouteResponse)
async def get_route(
    start_lat: float,
    start_lng: float,
    end_lat: float,
    end_lng: float,
    svc: ServicesDep,
    avoid_traffic: bool = True,
) -> RouteResponse:
    try:
        req = RouteRequest(
            start=LatLng(lat=start_lat, lon=start_lng),
            end=LatLng(lat=end_lat, lon=end_lng),
            avoid_traffic=avoid_traffic,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return await _calculate(svc, req)


@app.post("/api/routes/calculate", response_model=RouteResponse)
async def calculate_route(req: RouteRequest, svc: ServicesDep) -> RouteResponse:
    return await _calculate(svc, req)


@app.get("/api/routes/store")
async def route_store_status(svc: ServicesDep) -> dict[str, int]:
    return svc.planner.routes.snapshot()


@app.get("/api/routes/{route_id}/waypoints", response_model=list[Waypoint])
async def route_waypoints(route_id: str, svc: ServicesDep) -> list[Waypoint]:
    try:
        return svc.planner.get_route_waypoints(route_id)
    except SmartRouteError as e:
        raise _not_found(e) from e


@app.get("/api/graph/status", response_model=GraphStatus)
async def graph_status(svc: ServicesDep) -> GraphStatus:
    return svc.planner.graph_status()


@app.post("/api/graph/refresh", response_model=GraphStatus)
async def refresh_graph(svc: ServicesDep) -> GraphStatus:
    await asyncio.to_thread(svc.planner.refresh_graph)
    return svc.planner.graph_status()


@app.get("/api/traffic/current", response_model=list[TrafficSample])
async def current_traffic(svc: ServicesDep) -> list[TrafficSample]:
    return svc.traffic.list_current()


@app.get("/api/traffic/active", response_model=list[TrafficSample])
async def traffic_near(
    lat: Annotated[float, Query(ge=-90, le=90)],
    lon: Annotated[float, Query(ge=-180, le=180)],
    svc: ServicesDep,
    radius: Annotated[float, Query(gt=0)] = 5000.0,
) -> list[TrafficSample]:
    return svc.traffic.list_near(lat, lon, radius_m=radius)


@app.post("/api/traffic/report")
async def report_traffic(report: TrafficReport, svc: ServicesDep) -> dict[str, Any]:
    sample = svc.traffic.report(report)
    affected = await asyncio.to_thread(svc.tracker.handle_traffic_report, sample)
    return {"sample": sample.model_dump(mode="json"), "alerted_users": affected}


@app.post("/api/location/update")
async def location_update(update: LocationUpdate, svc: ServicesDep) -> dict[str, Any]:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()
    progress = await asyncio.to_thread(svc.tracker.handle_location_update, update)
    log_event(
        "location_update",
        request_id=request_id,
        user_id=update.user_id,
        tracked=progress is not None,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    if progress is None:
        return {"message": "Location recorded; no active route", "progress": None}
    return {"message": "Location recorded", "progress": progress.model_dump(mode="json")}


@app.post("/api/location/{user_id}/route/{route_id}/start", response_model=ActiveRoute)
async def start_tracking(user_id: str, route_id: str, svc: ServicesDep) -> ActiveRoute:
    try:
        return svc.tracker.start_tracking(user_id, route_id)
    except SmartRouteError as e:
        raise _not_found(e) from e


@app.post("/api/location/{user_id}/route/stop")
async def stop_tracking(user_id: str, svc: ServicesDep) -> dict[str, Any]:
    stopped = svc.tracker.stop_tracking(user_id)
    return {"user_id": user_id, "stopped": stopped}


@app.get("/api/location/{user_id}/active-route", response_model=ActiveRoute)
async def active_route(user_id: str, svc: ServicesDep) -> ActiveRoute:
    try:
        return svc.tracker.get_active_route(user_id)
    except SmartRouteError as e:
        raise _not_found(e) from e


@app.get("/api/location/{user_id}/latest", response_model=LocationUpdate)
async def latest_location(user_id: str, svc: ServicesDep) -> LocationUpdate:
    location = svc.tracker.latest_location(user_id)
    if location is None:
        raise HTTPException(status_code=404, detail="no location recorded")
    return location


@app.get("/api/location/{user_id}/history", response_model=list[LocationUpdate])
async def location_history(
    user_id: str,
    svc: ServicesDep,
    since: Annotated[datetime | None, Query(alias="from")] = None,
    until: Annotated[datetime | None, Query(alias="to")] = None,
) -> list[LocationUpdate]:
    return svc.tracker.location_history(user_id, since=since, until=until)


@app.get("/api/notifications/{user_id}/pending")
async def pending_notifications(user_id: str, svc: ServicesDep) -> dict[str, Any]:
    return {"user_id": user_id, "pending": svc.notifications.pending(user_id)}


@app.get("/api/notifications/{user_id}", response_model=list[Notification])
async def drain_notifications(user_id: str, svc: ServicesDep) -> list[Notification]:
    return svc.notifications.drain(user_id)
