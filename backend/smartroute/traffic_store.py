from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from threading import Lock

from .geo_math import haversine_km, m_to_km
from .logging_utils import log_event
from .models import TrafficReport, TrafficSample, traffic_multiplier
from .settings import settings


class TrafficStore:
    """Thread-safe store of traffic reports; only the trailing window counts as current."""

    def __init__(self, *, window_minutes: int | None = None) -> None:
        minutes = settings.traffic_window_minutes if window_minutes is None else window_minutes
        self._window = timedelta(minutes=max(1, int(minutes)))
        self._lock = Lock()
        self._samples: list[TrafficSample] = []

    @property
    def window(self) -> timedelta:
        return self._window

    def report(self, report: TrafficReport, *, now: datetime | None = None) -> TrafficSample:
        sample = TrafficSample(
            id=uuid.uuid4().hex,
            road_name=report.road_name.strip(),
            traffic_level=report.traffic_level,
            multiplier=traffic_multiplier(report.traffic_level),
            reported_at=now or datetime.now(UTC),
            coordinates=(report.lon, report.lat),
        )
        self.add(sample)
        log_event(
            "traffic_reported",
            sample_id=sample.id,
            road_name=sample.road_name,
            traffic_level=sample.traffic_level.name.lower(),
            multiplier=sample.multiplier,
            reported_by=report.reported_by,
        )
        return sample

    def add(self, sample: TrafficSample) -> None:
        with self._lock:
            self._samples.append(sample)

    def list_current(self, *, now: datetime | None = None) -> list[TrafficSample]:
        cutoff = (now or datetime.now(UTC)) - self._window
        with self._lock:
            self._samples = [s for s in self._samples if s.reported_at > cutoff]
            return list(self._samples)

    def list_near(
        self,
        lat: float,
        lon: float,
        *,
        radius_m: float | None = None,
        now: datetime | None = None,
    ) -> list[TrafficSample]:
        """Current samples reported within ``radius_m`` of a position."""
        radius_km = m_to_km(settings.traffic_alert_radius_m if radius_m is None else radius_m)
        return [
            s
            for s in self.list_current(now=now)
            if haversine_km(lat, lon, s.coordinates[1], s.coordinates[0]) <= radius_km
        ]

    def traffic_ahead(self, road_names: Iterable[str], *, now: datetime | None = None) -> list[TrafficSample]:
        wanted = {name for name in road_names if name}
        if not wanted:
            return []
        return [s for s in self.list_current(now=now) if s.road_name in wanted]
