"""Great-circle helpers shared by the filter, graph builder and scorer."""

import math

EARTH_RADIUS_M: int = 6_371_000

LatLngTuple = tuple[float, float]


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Returns the great-circle distance in metres between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = lat2_r - lat1_r
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(a: LatLngTuple, b: LatLngTuple) -> float:
    """Tuple form of :func:`haversine_m`."""
    return haversine_m(a[0], a[1], b[0], b[1])


def offset_m(
    origin: LatLngTuple, north_m: float, east_m: float
) -> LatLngTuple:
    """Returns the point ``north_m``/``east_m`` metres away from ``origin``.

    Flat-earth approximation; fine for the few kilometres fragments span.
    """
    dlat = north_m / EARTH_RADIUS_M
    dlng = east_m / (EARTH_RADIUS_M * math.cos(math.radians(origin[0])))
    return origin[0] + math.degrees(dlat), origin[1] + math.degrees(dlng)
