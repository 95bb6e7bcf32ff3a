from __future__ import annotations

import math

import pytest

from smartroute.geo_math import eta_s, haversine_km, interpolate, m_to_km, mps_to_kmh, travel_minutes


def test_haversine_is_zero_for_identical_points() -> None:
    assert haversine_km(22.3039, 70.8022, 22.3039, 70.8022) == 0.0


def test_haversine_one_degree_of_latitude_is_about_111_km() -> None:
    assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.195, abs=0.01)
    assert haversine_km(1.0, 0.0, 0.0, 0.0) == pytest.approx(haversine_km(0.0, 0.0, 1.0, 0.0))


def test_eta_uses_cruise_default_for_missing_or_non_positive_speed() -> None:
    assert eta_s(10.0, 40.0) == pytest.approx(900.0)
    assert eta_s(10.0, 0.0) == pytest.approx(720.0)
    assert eta_s(10.0, -5.0) == pytest.approx(720.0)
    assert eta_s(10.0, None) == pytest.approx(720.0)
    assert eta_s(10.0, math.nan, default_speed_kmh=20.0) == pytest.approx(1800.0)
    assert eta_s(-3.0, 40.0) == 0.0


def test_unit_conversions_and_interpolation() -> None:
    assert m_to_km(50.0) == pytest.approx(0.05)
    assert mps_to_kmh(10.0) == pytest.approx(36.0)
    assert mps_to_kmh(None) is None
    assert travel_minutes(20.0, 40.0) == pytest.approx(30.0)
    assert interpolate(0.0, 0.0, 1.0, 2.0, 0.5) == pytest.approx((0.5, 1.0))
