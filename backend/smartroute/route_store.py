from __future__ import annotations

import copy
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock

from .errors import RouteNotFoundError
from .models import RouteResponse, Waypoint
from .settings import settings


@dataclass(frozen=True)
class StoredRoute:
    route: RouteResponse
    waypoints: tuple[Waypoint, ...]
    road_names: tuple[str, ...]


@dataclass
class _RouteStoreEntry:
    inserted_at: float
    payload: StoredRoute


class RouteStore:
    """Computed routes by id, bounded by age and count (oldest evicted first)."""

    def __init__(self, *, ttl_s: int, max_entries: int) -> None:
        self._ttl_s = max(1, int(ttl_s))
        self._max_entries = max(1, int(max_entries))
        self._lock = Lock()
        self._items: OrderedDict[str, _RouteStoreEntry] = OrderedDict()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _is_expired(self, entry: _RouteStoreEntry) -> bool:
        return (time.time() - entry.inserted_at) > self._ttl_s

    def get(self, route_id: str) -> StoredRoute | None:
        with self._lock:
            entry = self._items.get(route_id)
            if entry is None:
                self._misses += 1
                return None

            if self._is_expired(entry):
                self._items.pop(route_id, None)
                self._misses += 1
                return None

            self._items.move_to_end(route_id)
            self._hits += 1
            return copy.deepcopy(entry.payload)

    def require(self, route_id: str) -> StoredRoute:
        stored = self.get(route_id)
        if stored is None:
            raise RouteNotFoundError(route_id)
        return stored

    def set(self, route_id: str, value: StoredRoute) -> None:
        payload = copy.deepcopy(value)
        with self._lock:
            if route_id in self._items:
                self._items.move_to_end(route_id)
            self._items[route_id] = _RouteStoreEntry(inserted_at=time.time(), payload=payload)

            while len(self._items) > self._max_entries:
                self._items.popitem(last=False)
                self._evictions += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._items),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "ttl_s": self._ttl_s,
                "max_entries": self._max_entries,
            }


def build_waypoints(route: RouteResponse, leg_names: list[str]) -> tuple[Waypoint, ...]:
    """One waypoint per path point, named by the road leaving it."""
    last = len(route.path) - 1
    out: list[Waypoint] = []
    for idx, point in enumerate(route.path):
        if idx == last:
            label = "Destination"
        elif idx < len(leg_names) and leg_names[idx]:
            label = leg_names[idx]
        else:
            label = "Route point"
        out.append(Waypoint(index=idx, lat=point.lat, lon=point.lon, name=label))
    return tuple(out)


def new_route_store() -> RouteStore:
    return RouteStore(
        ttl_s=settings.route_store_ttl_s,
        max_entries=settings.route_store_max_entries,
    )
