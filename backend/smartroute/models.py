from __future__ import annotations

from datetime import UTC, datetime
from enum import IntEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class TrafficLevel(IntEnum):
    LIGHT = 1
    MODERATE = 2
    HEAVY = 3
    BLOCKED = 4


_TRAFFIC_MULTIPLIERS: dict[TrafficLevel, float] = {
    TrafficLevel.LIGHT: 1.2,
    TrafficLevel.MODERATE: 1.8,
    TrafficLevel.HEAVY: 2.5,
    # Effectively impassable.
    TrafficLevel.BLOCKED: 10.0,
}


def traffic_multiplier(level: TrafficLevel) -> float:
    return _TRAFFIC_MULTIPLIERS[TrafficLevel(level)]


class RoadSegment(BaseModel):
    """One named polyline as delivered by the road data collaborator."""

    polyline: list[tuple[float, float]]  # [(lon, lat), ...]
    road_name: str = "Unknown Road"
    highway_class: str | None = None
    max_speed: str | None = None
    lanes: str | None = None


class TrafficReport(BaseModel):
    road_name: str = Field(..., min_length=1)
    traffic_level: TrafficLevel
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    reported_by: str = "System"


class TrafficSample(BaseModel):
    id: str
    road_name: str
    traffic_level: TrafficLevel
    multiplier: float = Field(..., ge=1.0)
    reported_at: datetime
    coordinates: tuple[float, float]  # [lon, lat]


class RouteRequest(BaseModel):
    start: LatLng
    end: LatLng
    # Informational; routing always uses the current traffic weights.
    avoid_traffic: bool = True


class RoutePoint(BaseModel):
    lat: float
    lon: float


class RouteResponse(BaseModel):
    route_id: str = ""
    path: list[RoutePoint] = Field(default_factory=list)
    total_distance_km: float = 0.0
    estimated_time_min: float = 0.0
    instructions: list[str] = Field(default_factory=list)
    has_traffic_detours: bool = False
    fallback_used: bool = False


class Waypoint(BaseModel):
    index: int = Field(..., ge=0)
    lat: float
    lon: float
    name: str


class ActiveRoute(BaseModel):
    user_id: str
    route_id: str
    start: LatLng
    destination: LatLng
    total_distance_km: float = Field(..., ge=0.0)
    remaining_distance_km: float = Field(..., ge=0.0)
    current_waypoint_index: int = Field(default=0, ge=0)
    road_names: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LocationUpdate(BaseModel):
    user_id: str = Field(..., min_length=1)
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    speed_mps: float | None = None
    heading_deg: float | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("speed_mps")
    @classmethod
    def finite_speed(cls, v: float | None) -> float | None:
        if v is not None and (v != v or v in (float("inf"), float("-inf"))):
            raise ValueError("speed must be finite")
        return v

    @field_validator("timestamp")
    @classmethod
    def utc_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)

    @property
    def position(self) -> LatLng:
        return LatLng(lat=self.lat, lon=self.lon)


class RouteProgress(BaseModel):
    route_id: str
    user_id: str
    distance_covered_km: float
    distance_remaining_km: float
    percent_complete: float
    current_waypoint_index: int
    eta_remaining_s: float


NotificationEvent = Literal[
    "route_recalculated",
    "route_progress",
    "waypoint_reached",
    "traffic_alert",
    "tracking_started",
    "tracking_stopped",
]


class Notification(BaseModel):
    event: NotificationEvent
    user_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class GraphStatus(BaseModel):
    state: Literal["unbuilt", "building", "ready"]
    node_count: int = 0
    edge_count: int = 0
    built_at_utc: str | None = None
    last_traffic_refresh_utc: str | None = None
    last_traffic_sample_count: int = 0
