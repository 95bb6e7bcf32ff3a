from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from .logging_utils import log_event
from .models import RoadSegment, TrafficSample
from .settings import settings

# Collaborator capabilities consumed by the planner. Either may raise; the
# planner treats a failure as "no data" for that cycle.
RoadSegmentSource = Callable[[], Sequence[RoadSegment]]
TrafficSource = Callable[[], Sequence[TrafficSample]]


def _road_name(properties: dict[str, Any]) -> str:
    for key in ("name", "highway"):
        value = properties.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return "Unnamed Road"


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _lines_from_geometry(geometry: object) -> list[list[Any]]:
    if not isinstance(geometry, dict):
        return []
    kind = geometry.get("type")
    coords = geometry.get("coordinates")
    if not isinstance(coords, list):
        return []
    if kind == "LineString":
        return [coords]
    if kind == "MultiLineString":
        return [line for line in coords if isinstance(line, list)]
    return []


def segments_from_feature_collection(payload: object) -> list[RoadSegment]:
    if not isinstance(payload, dict):
        return []
    features = payload.get("features")
    if not isinstance(features, list):
        return []
    out: list[RoadSegment] = []
    for feature in features:
        if not isinstance(feature, dict):
            continue
        properties = feature.get("properties")
        if not isinstance(properties, dict):
            properties = {}
        name = _road_name(properties)
        for line in _lines_from_geometry(feature.get("geometry")):
            polyline = [
                (pt[0], pt[1])
                for pt in line
                if isinstance(pt, (list, tuple)) and len(pt) >= 2
            ]
            if len(polyline) < 2:
                continue
            try:
                out.append(
                    RoadSegment(
                        polyline=polyline,
                        road_name=name,
                        highway_class=_optional_str(properties.get("highway")),
                        max_speed=_optional_str(properties.get("maxspeed")),
                        lanes=_optional_str(properties.get("lanes")),
                    )
                )
            except ValueError:
                # Non-numeric coordinates; the graph would drop it anyway.
                continue
    return out


def load_geojson_segments(path: Path) -> list[RoadSegment]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    segments = segments_from_feature_collection(payload)
    log_event("road_data_loaded", path=str(path), segment_count=len(segments))
    return segments


def geojson_road_source(path: Path | None = None) -> RoadSegmentSource:
    resolved = path if path is not None else settings.resolved_road_data_path()

    def _source() -> Sequence[RoadSegment]:
        return load_geojson_segments(resolved)

    return _source


def static_road_source(segments: Sequence[RoadSegment]) -> RoadSegmentSource:
    frozen = tuple(segments)
    return lambda: frozen
