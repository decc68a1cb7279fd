"""Route matching: which experienced routes can carry a rider from A to B.

Given a MatchQuery and a set of candidate Routes, returns the routes that
pass near both the rider's start and end point, in the right direction and
on a suitable day, together with where and when the rider should join and
leave the route.
"""

from __future__ import annotations

import datetime
import logging
from typing import Iterable, Optional

from cyclebuddy.config import MAX_RADIUS_M, MIN_RADIUS_M
from cyclebuddy.errors import ValidationError
from cyclebuddy.geo.geometry import (
    distance,
    distance_to_polyline,
    interpolate_point,
    polyline_length,
    project_fraction,
    substring,
)
from cyclebuddy.models import Day, GeoPoint, MatchQuery, MatchResult, Route, seconds_since_midnight

logger = logging.getLogger(__name__)


def validate_radius(radius: float) -> None:
    """Raise ValidationError unless MIN_RADIUS_M <= radius <= MAX_RADIUS_M."""
    if radius is None or not MIN_RADIUS_M <= radius <= MAX_RADIUS_M:
        raise ValidationError(
            f"Radius out of bounds. Must be between {MIN_RADIUS_M}m and {MAX_RADIUS_M}m"
        )


def average_speed(route: Route) -> float:
    """Average speed of a route in m/s, assumed constant along the route."""
    return polyline_length(route.polyline) / route.duration_s


def _travel_time(distance_m: float, speed: float) -> datetime.timedelta:
    if speed <= 0:
        return datetime.timedelta(0)
    return datetime.timedelta(seconds=distance_m / speed)


def match_routes(
    query: MatchQuery,
    candidates: Iterable[Route],
    *,
    today: Optional[datetime.date] = None,
) -> list[MatchResult]:
    """Filter, score and order candidate routes for a query.

    Parameters
    ----------
    query : MatchQuery
        Rider start/end points, search radius, days and optional target
        date-time.
    candidates : iterable of Route
        Routes to consider, typically pre-filtered by the store.
    today : datetime.date, optional
        Date used to anchor meeting/divorce times when the query has no
        ``target_datetime``.  Defaults to the current date.

    Returns
    -------
    list[MatchResult]
        Sorted by how soon after the target time the rider reaches their
        destination, then by route id.
    """
    validate_radius(query.radius)

    target = query.target_datetime
    if target is not None:
        base = datetime.datetime.combine(target.date(), datetime.time(), tzinfo=target.tzinfo)
        required_day: Optional[Day] = Day.from_date(target.date())
        anchor = target
    else:
        base = datetime.datetime.combine(today or datetime.date.today(), datetime.time())
        required_day = None
        anchor = base

    results: list[MatchResult] = []
    total = 0
    for route in candidates:
        total += 1
        result = _match_route(route, query, base, required_day)
        if result is not None:
            results.append(result)

    results.sort(
        key=lambda r: (
            r.divorce_time + r.time_from_divorce_point - anchor,
            r.route_id if r.route_id is not None else -1,
        )
    )
    logger.info("Matched %d of %d candidate routes", len(results), total)
    return results


def _match_route(
    route: Route,
    query: MatchQuery,
    base: datetime.datetime,
    required_day: Optional[Day],
) -> MatchResult | None:
    """Try to match a single route; None when it does not qualify."""
    dist_from_start = project_fraction(route.polyline, query.start_point)
    dist_from_end = project_fraction(route.polyline, query.end_point)

    # The rider's start must come strictly before their end along the route
    if dist_from_start >= dist_from_end:
        logger.debug("Route %s runs the wrong way for this query", route.id)
        return None

    if distance_to_polyline(route.polyline, query.start_point) > query.radius:
        return None
    if distance_to_polyline(route.polyline, query.end_point) > query.radius:
        return None

    days = route.days & query.days
    if required_day is not None:
        if required_day not in route.days:
            return None
    elif not days:
        return None

    meeting_point = interpolate_point(route.polyline, dist_from_start)
    divorce_point = interpolate_point(route.polyline, dist_from_end)

    speed = average_speed(route)
    departure_s = seconds_since_midnight(route.departure_time)
    duration_s = route.duration_s
    meeting_time = base + datetime.timedelta(seconds=departure_s + dist_from_start * duration_s)
    divorce_time = base + datetime.timedelta(seconds=departure_s + dist_from_end * duration_s)

    distance_to_meeting_point = distance(query.start_point, meeting_point)
    distance_from_divorce_point = distance(query.end_point, divorce_point)

    segment = substring(route.polyline, dist_from_start, dist_from_end)

    return MatchResult(
        route_id=route.id,
        owner=route.owner,
        route_name=route.name,
        meeting_point=meeting_point,
        divorce_point=divorce_point,
        meeting_time=meeting_time,
        divorce_time=divorce_time,
        matched_segment_length=polyline_length(segment),
        distance_to_meeting_point=distance_to_meeting_point,
        distance_from_divorce_point=distance_from_divorce_point,
        time_to_meeting_point=_travel_time(distance_to_meeting_point, speed),
        time_from_divorce_point=_travel_time(distance_from_divorce_point, speed),
        days=days,
        average_speed=speed,
        segment=segment,
    )


def routes_near(point: GeoPoint, radius: float, candidates: Iterable[Route]) -> list[Route]:
    """Routes whose closest approach to *point* is within *radius* metres.

    Sorted by that distance, nearest first.
    """
    validate_radius(radius)
    found: list[tuple[float, int, Route]] = []
    for route in candidates:
        dist = distance_to_polyline(route.polyline, point)
        if dist <= radius:
            found.append((dist, route.id if route.id is not None else -1, route))
    found.sort(key=lambda x: (x[0], x[1]))
    logger.info(
        "Found %d routes within %.0f m of (%.4f, %.4f)",
        len(found), radius, point.latitude, point.longitude,
    )
    return [route for _, _, route in found]
