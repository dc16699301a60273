"""
Delivery fee tiering

The fee is a per-kilometer rate with a floor minimum, applied to the
great-circle distance between the dispatching pharmacy and the delivery
address.
"""
import math
from math import radians, sin, cos, asin, sqrt
from typing import Optional

from pydantic import BaseModel

from config import settings
from schemas import GeoPoint

EARTH_RADIUS_KM = 6371

# (max distance km, hours) checked in order
ETA_TIERS = [(10, 2), (25, 6), (50, 12)]
DEFAULT_ETA_HOURS = 24


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate the great circle distance between two points on the earth (km)."""
    # convert decimal degrees to radians
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])
    # haversine formula
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(min(1.0, a)))
    return c * EARTH_RADIUS_KM


def distance_from_pharmacy(location: Optional[GeoPoint]) -> Optional[float]:
    if location is None:
        return None
    return haversine_km(settings.PHARMACY_LAT, settings.PHARMACY_LNG, location.lat, location.lng)


def delivery_fee(distance_km: Optional[float],
                 per_km: Optional[float] = None,
                 min_fee: Optional[float] = None) -> float:
    """max(min_fee, ceil(distance_km) * per_km); the fallback fee when distance is unknown."""
    if distance_km is None:
        return float(settings.DELIVERY_FALLBACK_FEE)
    per_km = settings.DELIVERY_PER_KM if per_km is None else per_km
    min_fee = settings.DELIVERY_MIN_FEE if min_fee is None else min_fee
    return float(max(min_fee, math.ceil(distance_km) * per_km))


def estimated_hours(distance_km: Optional[float]) -> int:
    if distance_km is None:
        return DEFAULT_ETA_HOURS
    for limit, hours in ETA_TIERS:
        if distance_km <= limit:
            return hours
    return DEFAULT_ETA_HOURS


def compute_tax(subtotal: float) -> float:
    return float(round(subtotal * settings.TAX_RATE))


class DeliveryQuote(BaseModel):
    distance_km: Optional[float] = None
    fee: Optional[float] = None
    final_fee: Optional[float] = None
    is_free: bool = False
    is_deliverable: bool = True
    estimated_delivery_hours: int = DEFAULT_ETA_HOURS
    origin: str
    message: Optional[str] = None


def quote_delivery(location: Optional[GeoPoint], order_value: float = 0) -> DeliveryQuote:
    distance = distance_from_pharmacy(location)
    rounded = round(distance, 2) if distance is not None else None

    if distance is not None and distance > settings.MAX_DELIVERY_DISTANCE_KM:
        return DeliveryQuote(
            distance_km=rounded,
            is_deliverable=False,
            origin=settings.PHARMACY_NAME,
            message=f"Delivery not available beyond {settings.MAX_DELIVERY_DISTANCE_KM:g}km "
                    f"from {settings.PHARMACY_NAME}",
        )

    fee = delivery_fee(distance)
    threshold = settings.FREE_DELIVERY_THRESHOLD
    is_free = threshold is not None and order_value >= threshold
    return DeliveryQuote(
        distance_km=rounded,
        fee=fee,
        final_fee=0.0 if is_free else fee,
        is_free=is_free,
        estimated_delivery_hours=estimated_hours(distance),
        origin=settings.PHARMACY_NAME,
    )
