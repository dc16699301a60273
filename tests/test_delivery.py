import math

import pytest

from config import settings
from delivery import compute_tax, delivery_fee, estimated_hours, haversine_km, quote_delivery
from schemas import GeoPoint

ORIGIN = GeoPoint(lat=28.6139, lng=77.2090)


def test_haversine_same_point_is_zero():
    assert haversine_km(28.6139, 77.2090, 28.6139, 77.2090) == pytest.approx(0.0)


def test_haversine_delhi_to_mumbai():
    assert 1100 < haversine_km(28.6139, 77.2090, 19.0760, 72.8777) < 1200


def test_haversine_antipodal_points():
    assert haversine_km(0.0, 0.0, 0.0, 180.0) == pytest.approx(math.pi * 6371, rel=1e-6)
    assert haversine_km(90.0, 0.0, -90.0, 0.0) > 20000


@pytest.mark.parametrize("distance, expected", [
    (0.0, 30.0),
    (0.4, 30.0),
    (2.0, 30.0),
    (2.1, 36.0),
    (5.2, 72.0),
    (10.0, 120.0),
])
def test_fee_is_ceil_distance_times_rate_with_floor(distance, expected):
    assert delivery_fee(distance) == expected


def test_fee_without_distance_uses_fallback():
    assert delivery_fee(None) == 50.0


def test_fee_with_explicit_rates():
    assert delivery_fee(2, per_km=20, min_fee=10) == 40.0
    assert delivery_fee(0.2, per_km=20, min_fee=25) == 25.0


@pytest.mark.parametrize("distance, hours", [
    (None, 24), (0, 2), (10, 2), (10.5, 6), (25, 6), (30, 12), (50, 12), (60, 24),
])
def test_estimated_hours(distance, hours):
    assert estimated_hours(distance) == hours


def test_tax_is_five_percent_rounded():
    assert compute_tax(1000) == 50.0
    assert compute_tax(0) == 0.0


def test_quote_at_pharmacy():
    quote = quote_delivery(ORIGIN, 100)
    assert quote.distance_km == 0
    assert quote.fee == 30.0
    assert quote.final_fee == 30.0
    assert quote.is_deliverable
    assert quote.estimated_delivery_hours == 2


def test_quote_without_location():
    quote = quote_delivery(None, 100)
    assert quote.distance_km is None
    assert quote.final_fee == 50.0
    assert quote.estimated_delivery_hours == 24


def test_quote_beyond_max_distance_is_not_deliverable():
    quote = quote_delivery(GeoPoint(lat=19.0760, lng=72.8777), 100)
    assert not quote.is_deliverable
    assert quote.fee is None
    assert "not available" in quote.message


def test_quote_free_over_threshold(monkeypatch):
    monkeypatch.setattr(settings, "FREE_DELIVERY_THRESHOLD", 500)
    assert quote_delivery(ORIGIN, 600).final_fee == 0.0
    assert quote_delivery(ORIGIN, 600).is_free
    below = quote_delivery(ORIGIN, 499)
    assert below.final_fee == 30.0 and not below.is_free
