"""Geometry kernel: pure functions over points and polylines.

Polylines are handed to Shapely as (lon, lat) LineStrings.  Fractions along
a polyline (``project_fraction`` / ``interpolate_point`` / ``substring``) are
measured in that planar coordinate space, while every distance or length
reported in metres uses the haversine formula.  Closest-approach searches
scale longitudes by cos(latitude) around the query point first.
"""

from __future__ import annotations

import math
from typing import Sequence

from shapely.affinity import scale
from shapely.geometry import LineString, Point
from shapely.ops import nearest_points
from shapely.ops import substring as _shapely_substring

from cyclebuddy.config import EARTH_RADIUS_M
from cyclebuddy.models import GeoPoint, Polyline


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return the great-circle distance in **meters** between two points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def distance(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in metres between two GeoPoints."""
    return haversine(a.latitude, a.longitude, b.latitude, b.longitude)


def polyline_length(polyline: Sequence[GeoPoint]) -> float:
    """Total length of a polyline in metres."""
    total = 0.0
    for a, b in zip(polyline, polyline[1:]):
        total += distance(a, b)
    return total


# ---------------------------------------------------------------------------
# Shapely conversions
# ---------------------------------------------------------------------------

def to_linestring(polyline: Sequence[GeoPoint]) -> LineString:
    """Polyline → Shapely LineString in (lon, lat) order."""
    return LineString([(p.longitude, p.latitude) for p in polyline])


def _to_shapely_point(point: GeoPoint) -> Point:
    return Point(point.longitude, point.latitude)


def _to_geo_point(point: Point) -> GeoPoint:
    return GeoPoint(latitude=point.y, longitude=point.x)


def _clamp_fraction(fraction: float) -> float:
    return min(1.0, max(0.0, fraction))


# ---------------------------------------------------------------------------
# Projection and interpolation
# ---------------------------------------------------------------------------

def project_fraction(polyline: Sequence[GeoPoint], point: GeoPoint) -> float:
    """Fraction (0-1) of the polyline's length at its closest approach to *point*.

    A polyline made only of zero-length segments has no direction; it
    projects everything to 0.
    """
    line = to_linestring(polyline)
    if line.length == 0:
        return 0.0
    return _clamp_fraction(float(line.project(_to_shapely_point(point), normalized=True)))


def interpolate_point(polyline: Sequence[GeoPoint], fraction: float) -> GeoPoint:
    """The point at *fraction* (0-1) of the way along the polyline."""
    line = to_linestring(polyline)
    if line.length == 0:
        return polyline[0]
    return _to_geo_point(line.interpolate(_clamp_fraction(fraction), normalized=True))


def _metric_scale(point: GeoPoint) -> float:
    """Longitude scale factor at *point*: a degree of longitude is cos(lat) shorter."""
    return max(math.cos(math.radians(point.latitude)), 0.01)


def closest_point(polyline: Sequence[GeoPoint], point: GeoPoint) -> GeoPoint:
    """The point on the polyline nearest to *point*.

    The search runs in a local equirectangular frame around *point*
    (longitudes scaled by cos(latitude)), so the result is the metric foot
    of the perpendicular rather than the nearest point in raw degrees.
    """
    k = _metric_scale(point)
    line = scale(to_linestring(polyline), xfact=k, yfact=1.0, origin=(0, 0))
    nearest_on_line, _ = nearest_points(line, Point(point.longitude * k, point.latitude))
    longitude = min(180.0, max(-180.0, nearest_on_line.x / k))
    return GeoPoint(latitude=nearest_on_line.y, longitude=longitude)


def distance_to_polyline(polyline: Sequence[GeoPoint], point: GeoPoint) -> float:
    """Closest-approach distance in metres between *point* and the polyline."""
    return distance(point, closest_point(polyline, point))


def substring(polyline: Sequence[GeoPoint], start: float, end: float) -> Polyline:
    """The part of the polyline between two fractions, as a new polyline."""
    start, end = _clamp_fraction(start), _clamp_fraction(end)
    line = to_linestring(polyline)
    if line.length == 0 or start == end:
        point = interpolate_point(polyline, start)
        return (point, point)
    part = _shapely_substring(line, start, end, normalized=True)
    return tuple(GeoPoint(latitude=lat, longitude=lon) for lon, lat in part.coords)


def bounding_box(polyline: Sequence[GeoPoint]) -> tuple[float, float, float, float]:
    """Return (min_lat, min_lon, max_lat, max_lon) of the polyline."""
    lats = [p.latitude for p in polyline]
    lons = [p.longitude for p in polyline]
    return min(lats), min(lons), max(lats), max(lons)
