"""SQLite persistence for users, routes, saved rider queries and BuddyRequests.

Every function takes an explicit ``conn``: a :class:`sqlite3.Connection`
already inside a transaction opened by :meth:`Database.session`.  Sessions
start with ``BEGIN IMMEDIATE`` so concurrent writers serialize on the
database lock, and rows that carry a ``version`` column are updated with an
optimistic check; a lost race raises :class:`ConflictError`.

Geometry is stored as JSON ``[[lat, lon], ...]`` together with a bounding
box, which is all the store needs to pre-filter candidates.  Exact geometry
is always recomputed in-process by the matcher.  Weekday sets are stored as
a bitmask integer (Monday = bit 0).
"""

from __future__ import annotations

import dataclasses
import datetime
import json
import logging
import math
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

from cyclebuddy.config import (
    DB_PATH,
    METERS_PER_DEGREE,
    PREFILTER_MARGIN_FACTOR,
    REASON_EXPERIENCED_ROUTE_DELETED,
    REASON_EXPERIENCED_USER_DELETED,
    REASON_INEXPERIENCED_ROUTE_DELETED,
    REASON_OWNER_DELETED,
    SQLITE_BUSY_TIMEOUT_S,
)
from cyclebuddy.errors import ConflictError, NotFoundError
from cyclebuddy.geo.geometry import bounding_box
from cyclebuddy.models import (
    BuddyRequest,
    BuddyRequestStatus,
    Day,
    GeoPoint,
    InexperiencedRoute,
    Route,
    User,
)

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT,
        distance_travelled REAL NOT NULL DEFAULT 0,
        helped_count INTEGER NOT NULL DEFAULT 0,
        users_helped INTEGER NOT NULL DEFAULT 0,
        rating_sum INTEGER NOT NULL DEFAULT 0,
        rating REAL NOT NULL DEFAULT 0,
        version INTEGER NOT NULL DEFAULT 0
    );
    CREATE TABLE IF NOT EXISTS experienced_routes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner INTEGER NOT NULL,
        name TEXT,
        route TEXT NOT NULL,
        departure_time TEXT NOT NULL,
        arrival_time TEXT NOT NULL,
        days INTEGER NOT NULL DEFAULT 0,
        min_lat REAL, min_lon REAL, max_lat REAL, max_lon REAL
    );
    CREATE TABLE IF NOT EXISTS inexperienced_routes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner INTEGER NOT NULL,
        start_point TEXT NOT NULL,
        end_point TEXT NOT NULL,
        radius REAL NOT NULL,
        days INTEGER NOT NULL DEFAULT 127,
        arrival_datetime TEXT,
        notify_owner INTEGER NOT NULL DEFAULT 0
    );
    CREATE TABLE IF NOT EXISTS buddy_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner INTEGER NOT NULL,
        experienced_user INTEGER NOT NULL,
        experienced_route INTEGER NOT NULL,
        experienced_route_name TEXT,
        inexperienced_route INTEGER,
        meeting_point TEXT NOT NULL,
        divorce_point TEXT NOT NULL,
        meeting_point_name TEXT,
        divorce_point_name TEXT,
        meeting_time TEXT NOT NULL,
        divorce_time TEXT NOT NULL,
        average_speed REAL NOT NULL,
        route TEXT NOT NULL,
        length REAL NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        reason TEXT NOT NULL DEFAULT '',
        review INTEGER NOT NULL DEFAULT 0,
        created TEXT NOT NULL,
        updated TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0
    );
    CREATE INDEX IF NOT EXISTS idx_routes_owner ON experienced_routes(owner);
    CREATE INDEX IF NOT EXISTS idx_routes_bbox ON experienced_routes(min_lat, max_lat);
    CREATE INDEX IF NOT EXISTS idx_inexp_owner ON inexperienced_routes(owner);
    CREATE INDEX IF NOT EXISTS idx_br_owner ON buddy_requests(owner);
    CREATE INDEX IF NOT EXISTS idx_br_exp_user ON buddy_requests(experienced_user);
"""

_OPEN_STATUSES = (BuddyRequestStatus.PENDING.value, BuddyRequestStatus.ACCEPTED.value)


class Database:
    """A SQLite database file that hands out transactional sessions."""

    def __init__(self, path: Path | str = DB_PATH, timeout: float = SQLITE_BUSY_TIMEOUT_S) -> None:
        self.path = Path(path)
        self.timeout = timeout

    def initialise(self) -> None:
        """Create the database file and tables if they don't exist."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path))
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA)
        conn.commit()
        conn.close()
        logger.info("Database ready: %s", self.path)

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """Open a connection inside one write transaction.

        Commits when the block exits normally and rolls back on any
        exception.  Failing to get the write lock within ``timeout``
        seconds raises ConflictError.
        """
        conn = sqlite3.connect(str(self.path), timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise ConflictError("The database is busy, try again") from e
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

_DAY_ORDER = list(Day)


def days_to_bitmask(days: Iterable[Day]) -> int:
    """Encode a set of days as an integer, Monday = bit 0."""
    mask = 0
    for day in days:
        mask |= 1 << _DAY_ORDER.index(Day(day))
    return mask


def bitmask_to_days(mask: int) -> frozenset[Day]:
    """Decode a day bitmask back to a frozenset of Day."""
    return frozenset(day for i, day in enumerate(_DAY_ORDER) if mask & (1 << i))


def _point_to_json(point: GeoPoint) -> str:
    return json.dumps(point.as_list())


def _point_from_json(text: str) -> GeoPoint:
    lat, lon = json.loads(text)
    return GeoPoint(lat, lon)


def _polyline_to_json(polyline: Iterable[GeoPoint]) -> str:
    return json.dumps([p.as_list() for p in polyline])


def _polyline_from_json(text: str) -> tuple[GeoPoint, ...]:
    return tuple(GeoPoint(lat, lon) for lat, lon in json.loads(text))


def _dt_to_text(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_from_text(text: Optional[str]) -> Optional[datetime.datetime]:
    return datetime.datetime.fromisoformat(text) if text else None


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _prefilter_margins(latitude: float, radius_m: float) -> tuple[float, float]:
    """Degree margins (lat, lon) that safely cover *radius_m* around a latitude."""
    deg_lat = (radius_m / METERS_PER_DEGREE) * PREFILTER_MARGIN_FACTOR
    deg_lon = deg_lat / max(math.cos(math.radians(latitude)), 0.01)
    return deg_lat, deg_lon


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def _user_from_row(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"] or "",
        distance_travelled=row["distance_travelled"],
        helped_count=row["helped_count"],
        users_helped=row["users_helped"],
        rating_sum=row["rating_sum"],
        rating=row["rating"],
        version=row["version"],
    )


def put_user(conn: sqlite3.Connection, user: User) -> User:
    """Insert a new user and return it with its id."""
    cur = conn.execute(
        "INSERT INTO users (name, email, distance_travelled, helped_count, "
        "users_helped, rating_sum, rating) VALUES (?,?,?,?,?,?,?)",
        (user.name, user.email, user.distance_travelled, user.helped_count,
         user.users_helped, user.rating_sum, user.rating),
    )
    return dataclasses.replace(user, id=cur.lastrowid, version=0)


def get_user(conn: sqlite3.Connection, user_id: int) -> User:
    row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if row is None:
        raise NotFoundError("User doesn't exist")
    return _user_from_row(row)


def update_user(conn: sqlite3.Connection, user: User) -> User:
    """Write a user's profile and reputation, failing if it changed since read."""
    cur = conn.execute(
        "UPDATE users SET name = ?, email = ?, distance_travelled = ?, helped_count = ?, "
        "users_helped = ?, rating_sum = ?, rating = ?, version = version + 1 "
        "WHERE id = ? AND version = ?",
        (user.name, user.email, user.distance_travelled, user.helped_count,
         user.users_helped, user.rating_sum, user.rating, user.id, user.version),
    )
    if cur.rowcount == 0:
        get_user(conn, user.id)  # NotFoundError if it is gone
        raise ConflictError(f"User {user.id} was modified by someone else, try again")
    return dataclasses.replace(user, version=user.version + 1)


def delete_user(conn: sqlite3.Connection, user_id: int, now: Optional[datetime.datetime] = None) -> None:
    """Delete a user, their routes and saved queries, cancelling open requests."""
    get_user(conn, user_id)
    now = now or _now()

    for route in get_routes(conn, user_id):
        delete_route(conn, route.id, now=now)
    for saved in get_inexperienced_routes(conn, user_id):
        delete_inexperienced_route(conn, saved.id, now=now)

    canceled = _cancel_open_requests(conn, "owner", user_id, REASON_OWNER_DELETED, now)
    canceled += _cancel_open_requests(
        conn, "experienced_user", user_id, REASON_EXPERIENCED_USER_DELETED, now
    )
    conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
    logger.info("Deleted user %s (%d further BuddyRequests canceled)", user_id, canceled)


# ---------------------------------------------------------------------------
# Experienced routes
# ---------------------------------------------------------------------------

def _route_from_row(row: sqlite3.Row) -> Route:
    return Route(
        id=row["id"],
        owner=row["owner"],
        name=row["name"] or "",
        polyline=_polyline_from_json(row["route"]),
        departure_time=datetime.time.fromisoformat(row["departure_time"]),
        arrival_time=datetime.time.fromisoformat(row["arrival_time"]),
        days=bitmask_to_days(row["days"]),
    )


def _route_params(route: Route) -> tuple:
    min_lat, min_lon, max_lat, max_lon = bounding_box(route.polyline)
    return (
        route.owner,
        route.name,
        _polyline_to_json(route.polyline),
        route.departure_time.isoformat(),
        route.arrival_time.isoformat(),
        days_to_bitmask(route.days),
        min_lat, min_lon, max_lat, max_lon,
    )


def put_route(conn: sqlite3.Connection, route: Route) -> Route:
    """Insert an experienced route and return it with its id."""
    cur = conn.execute(
        "INSERT INTO experienced_routes (owner, name, route, departure_time, arrival_time, "
        "days, min_lat, min_lon, max_lat, max_lon) VALUES (?,?,?,?,?,?,?,?,?,?)",
        _route_params(route),
    )
    return dataclasses.replace(route, id=cur.lastrowid)


def get_route(conn: sqlite3.Connection, route_id: int) -> Route:
    row = conn.execute(
        "SELECT * FROM experienced_routes WHERE id = ?", (route_id,)
    ).fetchone()
    if row is None:
        raise NotFoundError("Route doesn't exist")
    return _route_from_row(row)


def get_routes(conn: sqlite3.Connection, owner_id: int, route_id: Optional[int] = None) -> list[Route]:
    """Routes owned by *owner_id*, optionally narrowed to one id."""
    query = "SELECT * FROM experienced_routes WHERE owner = ?"
    params: list = [owner_id]
    if route_id is not None:
        query += " AND id = ?"
        params.append(route_id)
    rows = conn.execute(query + " ORDER BY id", params).fetchall()
    return [_route_from_row(r) for r in rows]


def update_route(conn: sqlite3.Connection, route: Route) -> Route:
    cur = conn.execute(
        "UPDATE experienced_routes SET owner = ?, name = ?, route = ?, departure_time = ?, "
        "arrival_time = ?, days = ?, min_lat = ?, min_lon = ?, max_lat = ?, max_lon = ? "
        "WHERE id = ?",
        _route_params(route) + (route.id,),
    )
    if cur.rowcount == 0:
        raise NotFoundError("Route doesn't exist")
    return route


def delete_route(conn: sqlite3.Connection, route_id: int, now: Optional[datetime.datetime] = None) -> int:
    """Delete a route and cancel open BuddyRequests on it.

    Returns the number of requests canceled.
    """
    cur = conn.execute("DELETE FROM experienced_routes WHERE id = ?", (route_id,))
    if cur.rowcount == 0:
        raise NotFoundError("Route doesn't exist")
    canceled = _cancel_open_requests(
        conn, "experienced_route", route_id, REASON_EXPERIENCED_ROUTE_DELETED, now or _now()
    )
    logger.info("Deleted route %s (%d BuddyRequests canceled)", route_id, canceled)
    return canceled


def find_routes_near(conn: sqlite3.Connection, point: GeoPoint, radius_m: float) -> list[Route]:
    """Routes whose bounding box comes within roughly *radius_m* of *point*.

    This is only a pre-filter; callers check the exact distance.
    """
    deg_lat, deg_lon = _prefilter_margins(point.latitude, radius_m)
    rows = conn.execute(
        "SELECT * FROM experienced_routes "
        "WHERE min_lat - ? <= ? AND max_lat + ? >= ? "
        "AND min_lon - ? <= ? AND max_lon + ? >= ? ORDER BY id",
        (deg_lat, point.latitude, deg_lat, point.latitude,
         deg_lon, point.longitude, deg_lon, point.longitude),
    ).fetchall()
    return [_route_from_row(r) for r in rows]


def find_route_candidates(
    conn: sqlite3.Connection,
    start: GeoPoint,
    end: GeoPoint,
    radius_m: float,
) -> list[Route]:
    """Routes whose bounding box could pass within *radius_m* of both points."""
    near_start = {route.id: route for route in find_routes_near(conn, start, radius_m)}
    candidates = [
        route for route in find_routes_near(conn, end, radius_m) if route.id in near_start
    ]
    logger.info("Pre-filter kept %d candidate routes", len(candidates))
    return candidates


# ---------------------------------------------------------------------------
# Inexperienced routes (saved rider queries)
# ---------------------------------------------------------------------------

def _inexperienced_route_from_row(row: sqlite3.Row) -> InexperiencedRoute:
    return InexperiencedRoute(
        id=row["id"],
        owner=row["owner"],
        start_point=_point_from_json(row["start_point"]),
        end_point=_point_from_json(row["end_point"]),
        radius=row["radius"],
        days=bitmask_to_days(row["days"]),
        arrival_datetime=_dt_from_text(row["arrival_datetime"]),
        notify_owner=bool(row["notify_owner"]),
    )


def _inexperienced_route_params(saved: InexperiencedRoute) -> tuple:
    return (
        saved.owner,
        _point_to_json(saved.start_point),
        _point_to_json(saved.end_point),
        saved.radius,
        days_to_bitmask(saved.days),
        _dt_to_text(saved.arrival_datetime),
        int(saved.notify_owner),
    )


def put_inexperienced_route(conn: sqlite3.Connection, saved: InexperiencedRoute) -> InexperiencedRoute:
    cur = conn.execute(
        "INSERT INTO inexperienced_routes (owner, start_point, end_point, radius, days, "
        "arrival_datetime, notify_owner) VALUES (?,?,?,?,?,?,?)",
        _inexperienced_route_params(saved),
    )
    return dataclasses.replace(saved, id=cur.lastrowid)


def get_inexperienced_routes(
    conn: sqlite3.Connection,
    owner_id: int,
    saved_id: Optional[int] = None,
) -> list[InexperiencedRoute]:
    query = "SELECT * FROM inexperienced_routes WHERE owner = ?"
    params: list = [owner_id]
    if saved_id is not None:
        query += " AND id = ?"
        params.append(saved_id)
    rows = conn.execute(query + " ORDER BY id", params).fetchall()
    return [_inexperienced_route_from_row(r) for r in rows]


def update_inexperienced_route(conn: sqlite3.Connection, saved: InexperiencedRoute) -> InexperiencedRoute:
    cur = conn.execute(
        "UPDATE inexperienced_routes SET owner = ?, start_point = ?, end_point = ?, radius = ?, "
        "days = ?, arrival_datetime = ?, notify_owner = ? WHERE id = ?",
        _inexperienced_route_params(saved) + (saved.id,),
    )
    if cur.rowcount == 0:
        raise NotFoundError("Inexperienced Route doesn't exist")
    return saved


def delete_inexperienced_route(
    conn: sqlite3.Connection,
    saved_id: int,
    now: Optional[datetime.datetime] = None,
) -> int:
    cur = conn.execute("DELETE FROM inexperienced_routes WHERE id = ?", (saved_id,))
    if cur.rowcount == 0:
        raise NotFoundError("Inexperienced Route doesn't exist")
    return _cancel_open_requests(
        conn, "inexperienced_route", saved_id, REASON_INEXPERIENCED_ROUTE_DELETED, now or _now()
    )


# ---------------------------------------------------------------------------
# BuddyRequests
# ---------------------------------------------------------------------------

def _buddy_request_from_row(row: sqlite3.Row) -> BuddyRequest:
    return BuddyRequest(
        id=row["id"],
        owner=row["owner"],
        experienced_user=row["experienced_user"],
        experienced_route=row["experienced_route"],
        experienced_route_name=row["experienced_route_name"] or "",
        inexperienced_route=row["inexperienced_route"],
        meeting_point=_point_from_json(row["meeting_point"]),
        divorce_point=_point_from_json(row["divorce_point"]),
        meeting_point_name=row["meeting_point_name"] or "",
        divorce_point_name=row["divorce_point_name"] or "",
        meeting_time=_dt_from_text(row["meeting_time"]),
        divorce_time=_dt_from_text(row["divorce_time"]),
        average_speed=row["average_speed"],
        route=_polyline_from_json(row["route"]),
        length=row["length"],
        status=BuddyRequestStatus(row["status"]),
        reason=row["reason"],
        review=row["review"],
        created=_dt_from_text(row["created"]),
        updated=_dt_from_text(row["updated"]),
        version=row["version"],
    )


def _buddy_request_params(request: BuddyRequest) -> tuple:
    return (
        request.owner,
        request.experienced_user,
        request.experienced_route,
        request.experienced_route_name,
        request.inexperienced_route,
        _point_to_json(request.meeting_point),
        _point_to_json(request.divorce_point),
        request.meeting_point_name,
        request.divorce_point_name,
        _dt_to_text(request.meeting_time),
        _dt_to_text(request.divorce_time),
        request.average_speed,
        _polyline_to_json(request.route),
        request.length,
        request.status.value,
        request.reason,
        request.review,
        _dt_to_text(request.created),
        _dt_to_text(request.updated),
    )


_BUDDY_REQUEST_COLUMNS = (
    "owner, experienced_user, experienced_route, experienced_route_name, "
    "inexperienced_route, meeting_point, divorce_point, meeting_point_name, "
    "divorce_point_name, meeting_time, divorce_time, average_speed, route, length, "
    "status, reason, review, created, updated"
)


def put_buddy_request(conn: sqlite3.Connection, request: BuddyRequest) -> BuddyRequest:
    cur = conn.execute(
        f"INSERT INTO buddy_requests ({_BUDDY_REQUEST_COLUMNS}) "
        "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
        _buddy_request_params(request),
    )
    return dataclasses.replace(request, id=cur.lastrowid, version=0)


def get_buddy_requests(
    conn: sqlite3.Connection,
    owner_id: Optional[int] = None,
    experienced_user_id: Optional[int] = None,
    request_id: Optional[int] = None,
) -> list[BuddyRequest]:
    """BuddyRequests matching every filter given, ordered by id."""
    clauses = []
    params: list = []
    if owner_id is not None:
        clauses.append("owner = ?")
        params.append(owner_id)
    if experienced_user_id is not None:
        clauses.append("experienced_user = ?")
        params.append(experienced_user_id)
    if request_id is not None:
        clauses.append("id = ?")
        params.append(request_id)
    query = "SELECT * FROM buddy_requests"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    rows = conn.execute(query + " ORDER BY id", params).fetchall()
    return [_buddy_request_from_row(r) for r in rows]


def update_buddy_request(conn: sqlite3.Connection, request: BuddyRequest) -> BuddyRequest:
    """Write a BuddyRequest back, failing if it changed since it was read."""
    assignments = ", ".join(f"{col.strip()} = ?" for col in _BUDDY_REQUEST_COLUMNS.split(","))
    cur = conn.execute(
        f"UPDATE buddy_requests SET {assignments}, version = version + 1 "
        "WHERE id = ? AND version = ?",
        _buddy_request_params(request) + (request.id, request.version),
    )
    if cur.rowcount == 0:
        if not get_buddy_requests(conn, request_id=request.id):
            raise NotFoundError("BuddyRequest doesn't exist")
        raise ConflictError(f"BuddyRequest {request.id} was modified by someone else, try again")
    return dataclasses.replace(request, version=request.version + 1)


def delete_buddy_request(conn: sqlite3.Connection, request_id: int) -> bool:
    cur = conn.execute("DELETE FROM buddy_requests WHERE id = ?", (request_id,))
    return cur.rowcount > 0


_CANCELABLE_BY = {"owner", "experienced_user", "experienced_route", "inexperienced_route"}


def _cancel_open_requests(
    conn: sqlite3.Connection,
    column: str,
    value: int,
    reason: str,
    now: datetime.datetime,
) -> int:
    """Cancel pending/accepted requests where *column* = *value*."""
    if column not in _CANCELABLE_BY:
        raise ValueError(f"Can't cancel BuddyRequests by {column}")
    cur = conn.execute(
        f"UPDATE buddy_requests SET status = ?, reason = ?, updated = ?, version = version + 1 "
        f"WHERE {column} = ? AND status IN (?, ?)",
        (BuddyRequestStatus.CANCELED.value, reason, _dt_to_text(now), value) + _OPEN_STATUSES,
    )
    return cur.rowcount
