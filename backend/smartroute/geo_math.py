from __future__ import annotations

import math

EARTH_RADIUS_KM = 6_371.0
DEFAULT_CRUISE_SPEED_KMH = 50.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres.

    Kilometres are the only distance unit inside the routing core; metre-valued
    thresholds are converted with :func:`m_to_km` where they enter.
    """
    if lat1 == lat2 and lon1 == lon2:
        return 0.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def eta_s(distance_km: float, speed_kmh: float | None, *, default_speed_kmh: float = DEFAULT_CRUISE_SPEED_KMH) -> float:
    """Seconds needed to cover ``distance_km``; non-positive or missing speeds use the cruise default."""
    speed = float(speed_kmh) if speed_kmh is not None else 0.0
    if not math.isfinite(speed) or speed <= 0.0:
        speed = max(1e-6, float(default_speed_kmh))
    return max(0.0, float(distance_km)) / speed * 3600.0


def travel_minutes(distance_km: float, speed_kmh: float) -> float:
    return (max(0.0, float(distance_km)) / max(1e-6, float(speed_kmh))) * 60.0


def m_to_km(meters: float) -> float:
    return float(meters) / 1000.0


def mps_to_kmh(speed_mps: float | None) -> float | None:
    if speed_mps is None:
        return None
    return float(speed_mps) * 3.6


def interpolate(lat1: float, lon1: float, lat2: float, lon2: float, ratio: float) -> tuple[float, float]:
    return (lat1 + (lat2 - lat1) * ratio, lon1 + (lon2 - lon1) * ratio)
