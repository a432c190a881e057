from typing import Mapping, Optional, Tuple
from math import radians, sin, cos, sqrt, atan2, isfinite

from errors import ValidationError

EARTH_RADIUS_KM = 6371.0

Point = Tuple[float, float]


def haversine_km(a: Point, b: Point) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    rlat1 = radians(lat1)
    rlat2 = radians(lat2)
    a_ = sin(dlat / 2) ** 2 + cos(rlat1) * cos(rlat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a_), sqrt(1 - a_))
    return EARTH_RADIUS_KM * c


def distance_label_km(a: Point, b: Point) -> float:
    """Distance for "X km away" labels: kilometers, one decimal."""
    return round(haversine_km(a, b), 1)


def validate_point(lat, lng) -> Point:
    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        raise ValidationError("lat/lng must be numbers")
    if not (isfinite(lat) and isfinite(lng)):
        raise ValidationError("lat/lng must be finite")
    if not -90.0 <= lat <= 90.0:
        raise ValidationError(f"latitude {lat} out of range")
    if not -180.0 <= lng <= 180.0:
        raise ValidationError(f"longitude {lng} out of range")
    return lat, lng


def _pair(row, lat_key: str, lng_key: str) -> Optional[Point]:
    if isinstance(row, Mapping):
        lat, lng = row.get(lat_key), row.get(lng_key)
    else:
        lat, lng = getattr(row, lat_key, None), getattr(row, lng_key, None)
    if lat is None or lng is None:
        return None
    return float(lat), float(lng)


def customer_point(row) -> Optional[Point]:
    # customer_lat/customer_lng wins; legacy rows only carry lat/lng
    return _pair(row, "customer_lat", "customer_lng") or _pair(row, "lat", "lng")
