"""Core data structures for the cycle buddy matching engine."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from cyclebuddy.config import MAX_RADIUS_M, MIN_RADIUS_M
from cyclebuddy.errors import ValidationError


@dataclass(frozen=True)
class GeoPoint:
    """A (latitude, longitude) pair in degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90 <= self.latitude <= 90:
            raise ValidationError(f"Latitude {self.latitude} is out of range")
        if not -180 <= self.longitude <= 180:
            raise ValidationError(f"Longitude {self.longitude} is out of range")

    def as_list(self) -> list[float]:
        return [self.latitude, self.longitude]


Polyline = tuple[GeoPoint, ...]


def to_geo_point(value) -> GeoPoint:
    """Accept a GeoPoint or a ``[latitude, longitude]`` pair."""
    if isinstance(value, GeoPoint):
        return value
    if value is None or len(value) != 2:
        raise ValidationError(
            "Coordinates should have exactly 2 items in them, [latitude, longitude]"
        )
    return GeoPoint(float(value[0]), float(value[1]))


def to_polyline(points: Iterable) -> Polyline:
    """Build a Polyline from GeoPoints or coordinate pairs (>= 2 points)."""
    polyline = tuple(to_geo_point(p) for p in points)
    if len(polyline) < 2:
        raise ValidationError("A route requires at least 2 points")
    return polyline


class Day(str, Enum):
    """Day of the week, Monday first (matches ``date.weekday()``)."""
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def from_date(cls, date: datetime.date) -> "Day":
        return list(cls)[date.weekday()]


ALL_DAYS: frozenset[Day] = frozenset(Day)


def parse_days(values: Optional[Iterable]) -> frozenset[Day]:
    """Turn day names (or Day members) into a frozenset of Day."""
    if values is None:
        return frozenset()
    days = set()
    for value in values:
        if isinstance(value, Day):
            days.add(value)
            continue
        try:
            days.add(Day(str(value).strip().lower()))
        except ValueError:
            raise ValidationError(f"Invalid day '{value}'")
    return frozenset(days)


def seconds_since_midnight(t: datetime.time) -> int:
    """Convert a time object to seconds since midnight."""
    return t.hour * 3600 + t.minute * 60 + t.second


@dataclass
class Route:
    """A route an experienced cyclist rides regularly."""
    owner: int
    polyline: Polyline
    departure_time: datetime.time
    arrival_time: datetime.time
    days: frozenset[Day] = field(default_factory=frozenset)  # empty: never offered
    name: str = ""
    id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.owner is None:
            raise ValidationError("A route requires an owner")
        self.polyline = to_polyline(self.polyline)
        self.days = parse_days(self.days)
        if not isinstance(self.departure_time, datetime.time):
            raise ValidationError("A route requires a valid departure time")
        if not isinstance(self.arrival_time, datetime.time):
            raise ValidationError("A route requires a valid arrival time")
        if self.arrival_time <= self.departure_time:
            raise ValidationError("Arrival time must be after departure time")

    @property
    def duration_s(self) -> int:
        """Seconds between departure and arrival of one nominal journey."""
        return seconds_since_midnight(self.arrival_time) - seconds_since_midnight(
            self.departure_time
        )


@dataclass
class MatchQuery:
    """What an inexperienced cyclist is looking for.

    Radius bounds are checked by :func:`cyclebuddy.query.matcher.match_routes`.
    """
    start_point: GeoPoint
    end_point: GeoPoint
    radius: float
    days: frozenset[Day] = ALL_DAYS
    target_datetime: Optional[datetime.datetime] = None

    def __post_init__(self) -> None:
        self.start_point = to_geo_point(self.start_point)
        self.end_point = to_geo_point(self.end_point)
        self.days = parse_days(self.days) if self.days is not None else ALL_DAYS


@dataclass
class MatchResult:
    """One route that satisfies a MatchQuery, with the rendezvous geometry."""
    route_id: int
    owner: int
    route_name: str
    meeting_point: GeoPoint
    divorce_point: GeoPoint
    meeting_time: datetime.datetime
    divorce_time: datetime.datetime
    matched_segment_length: float  # metres along the route
    distance_to_meeting_point: float
    distance_from_divorce_point: float
    time_to_meeting_point: datetime.timedelta
    time_from_divorce_point: datetime.timedelta
    days: frozenset[Day]
    average_speed: float  # m/s
    segment: Polyline = ()


@dataclass
class InexperiencedRoute:
    """A journey an inexperienced cyclist has saved so it can be matched later."""
    owner: int
    start_point: GeoPoint
    end_point: GeoPoint
    radius: float
    days: frozenset[Day] = ALL_DAYS
    arrival_datetime: Optional[datetime.datetime] = None
    notify_owner: bool = False
    id: Optional[int] = None

    def __post_init__(self) -> None:
        self.start_point = to_geo_point(self.start_point)
        self.end_point = to_geo_point(self.end_point)
        self.days = parse_days(self.days) if self.days is not None else ALL_DAYS
        if self.radius is None or not MIN_RADIUS_M <= self.radius <= MAX_RADIUS_M:
            raise ValidationError(
                f"Radius out of bounds. Must be between {MIN_RADIUS_M}m and {MAX_RADIUS_M}m"
            )

    def to_match_query(self) -> MatchQuery:
        return MatchQuery(
            start_point=self.start_point,
            end_point=self.end_point,
            radius=self.radius,
            days=self.days,
            target_datetime=self.arrival_datetime,
        )


class BuddyRequestStatus(str, Enum):
    """Status of a BuddyRequest."""
    PENDING = "pending"  # initial
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELED = "canceled"
    COMPLETED = "completed"  # set only by a review


@dataclass
class BuddyRequest:
    """A collaboration between a requester (owner) and an experienced cyclist."""
    owner: int
    experienced_user: int
    experienced_route: int
    inexperienced_route: Optional[int]
    meeting_point: GeoPoint
    divorce_point: GeoPoint
    meeting_time: datetime.datetime
    divorce_time: datetime.datetime
    average_speed: float
    created: datetime.datetime
    updated: datetime.datetime
    route: Polyline = ()
    length: float = 0.0
    experienced_route_name: str = ""
    meeting_point_name: str = ""
    divorce_point_name: str = ""
    status: BuddyRequestStatus = BuddyRequestStatus.PENDING
    reason: str = ""
    review: int = 0  # 0: not reviewed yet
    id: Optional[int] = None
    version: int = 0  # bumped by the store on every write

    def __post_init__(self) -> None:
        self.meeting_point = to_geo_point(self.meeting_point)
        self.divorce_point = to_geo_point(self.divorce_point)
        self.route = tuple(to_geo_point(p) for p in self.route)
        try:
            self.status = BuddyRequestStatus(self.status)
        except ValueError:
            raise ValidationError(f"Invalid status '{self.status}'")
        for name in ("meeting_time", "divorce_time"):
            if not isinstance(getattr(self, name), datetime.datetime):
                raise ValidationError(f"BuddyRequest {name} must be a date-time")
        if (self.meeting_time.tzinfo is None) != (self.divorce_time.tzinfo is None):
            raise ValidationError(
                "Meeting and divorce times must both carry a timezone or both have none"
            )
        if self.divorce_time < self.meeting_time:
            raise ValidationError("Divorce time is before meeting time")
        if self.review not in (-1, 0, 1):
            raise ValidationError("BuddyRequest review must be -1, 0 or 1")


@dataclass
class User:
    """A cyclist, with the reputation counters the review process maintains."""
    name: str
    email: str = ""
    distance_travelled: float = 0.0  # metres, across completed requests
    helped_count: int = 0  # times this user was helped (as requester)
    users_helped: int = 0  # times this user helped someone (as experienced cyclist)
    rating_sum: int = 0
    rating: float = 0.0  # rating_sum / users_helped
    id: Optional[int] = None
    version: int = 0

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError("A user requires a name")
