from math import asin, cos, radians, sin, sqrt

from aquaflow.errors import InvalidInput
from aquaflow.models import GeoPoint

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    dlat = radians(b.latitude - a.latitude)
    dlon = radians(b.longitude - a.longitude)
    h = (
        sin(dlat / 2) ** 2
        + cos(radians(a.latitude)) * cos(radians(b.latitude)) * sin(dlon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * asin(sqrt(h))


def parse_point(value: object) -> GeoPoint:
    """Accept a GeoPoint, a mapping, or a [longitude, latitude] pair."""
    if isinstance(value, GeoPoint):
        point = value
    elif isinstance(value, dict):
        if "coordinates" in value:
            return parse_point(value["coordinates"])
        try:
            point = GeoPoint(
                longitude=value["longitude"], latitude=value["latitude"]
            )
        except (KeyError, ValueError) as exc:
            raise InvalidInput("Valid coordinates required") from exc
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        try:
            point = GeoPoint(longitude=float(value[0]), latitude=float(value[1]))
        except (TypeError, ValueError) as exc:
            raise InvalidInput("Valid coordinates required") from exc
    else:
        raise InvalidInput("Valid coordinates required")

    if not -180.0 <= point.longitude <= 180.0:
        raise InvalidInput(
            f"Longitude {point.longitude} out of range", longitude=point.longitude
        )
    if not -90.0 <= point.latitude <= 90.0:
        raise InvalidInput(
            f"Latitude {point.latitude} out of range", latitude=point.latitude
        )
    return point
