"""Orchestration layer: ties the store, matcher, lifecycle and reputation together.

Every operation takes an open session (``conn``) from
:meth:`cyclebuddy.store.database.Database.session` and the id of the user
making the call.  Authentication is somebody else's job; ids arrive here
already resolved.  Objects a caller isn't allowed to see are reported as
missing (NotFoundError) rather than forbidden.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import sqlite3
from typing import Any, Iterable, Mapping, Optional

from cyclebuddy.errors import InvalidTransitionError, NotFoundError, ValidationError
from cyclebuddy.lifecycle.buddy_request import apply_updates, build_buddy_request, change_status, role_of
from cyclebuddy.lifecycle.reputation import ReviewOutcome, review
from cyclebuddy.models import (
    BuddyRequest,
    BuddyRequestStatus,
    GeoPoint,
    InexperiencedRoute,
    MatchQuery,
    MatchResult,
    Route,
    User,
    to_geo_point,
)
from cyclebuddy.query.matcher import match_routes, routes_near
from cyclebuddy.store import database as store

logger = logging.getLogger(__name__)

ROUTE_FIELDS = frozenset({"name", "polyline", "departure_time", "arrival_time", "days"})
SAVED_QUERY_FIELDS = frozenset({
    "start_point", "end_point", "radius", "days", "arrival_datetime", "notify_owner",
})


def _pick(updates: Mapping[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
    ignored = sorted(set(updates) - allowed)
    if ignored:
        logger.debug("Ignoring read-only fields: %s", ", ".join(ignored))
    return {key: value for key, value in updates.items() if key in allowed}


# ═══════════════════════════════════════════════════════════════════════════
# Users
# ═══════════════════════════════════════════════════════════════════════════

def create_user(conn: sqlite3.Connection, name: str, email: str = "") -> User:
    user = store.put_user(conn, User(name=name, email=email))
    logger.info("Created user %s (%s)", user.id, user.name)
    return user


def get_user(conn: sqlite3.Connection, user_id: int) -> User:
    return store.get_user(conn, user_id)


def delete_user(conn: sqlite3.Connection, user_id: int, now: Optional[datetime.datetime] = None) -> None:
    """Delete a user together with everything they own."""
    store.delete_user(conn, user_id, now=now)


# ═══════════════════════════════════════════════════════════════════════════
# Experienced routes
# ═══════════════════════════════════════════════════════════════════════════

def create_route(
    conn: sqlite3.Connection,
    user_id: int,
    polyline: Iterable,
    departure_time: datetime.time,
    arrival_time: datetime.time,
    days: Iterable = (),
    name: str = "",
) -> Route:
    """Save a route the user rides regularly."""
    store.get_user(conn, user_id)
    route = Route(
        owner=user_id,
        polyline=polyline,
        departure_time=departure_time,
        arrival_time=arrival_time,
        days=days,
        name=name,
    )
    route = store.put_route(conn, route)
    logger.info("User %s created route %s with %d points", user_id, route.id, len(route.polyline))
    return route


def get_routes(conn: sqlite3.Connection, user_id: int, route_id: Optional[int] = None) -> list[Route]:
    """The user's own routes, or just one of them when *route_id* is given."""
    routes = store.get_routes(conn, user_id, route_id)
    if route_id is not None and not routes:
        raise NotFoundError("Route doesn't exist")
    return routes


def update_route(
    conn: sqlite3.Connection,
    user_id: int,
    route_id: int,
    updates: Mapping[str, Any],
) -> Route:
    """Change name, geometry, times or days of one of the user's routes."""
    (route,) = get_routes(conn, user_id, route_id)
    updated = dataclasses.replace(route, **_pick(updates, ROUTE_FIELDS))
    return store.update_route(conn, updated)


def delete_route(
    conn: sqlite3.Connection,
    user_id: int,
    route_id: int,
    now: Optional[datetime.datetime] = None,
) -> int:
    """Delete one of the user's routes; returns how many requests were canceled."""
    get_routes(conn, user_id, route_id)
    return store.delete_route(conn, route_id, now=now)


def get_nearby_routes(conn: sqlite3.Connection, point: GeoPoint, radius: float) -> list[Route]:
    """Every route passing within *radius* metres of *point*, nearest first."""
    point = to_geo_point(point)
    return routes_near(point, radius, store.find_routes_near(conn, point, radius))


def match(
    conn: sqlite3.Connection,
    query: MatchQuery,
    *,
    today: Optional[datetime.date] = None,
) -> list[MatchResult]:
    """Run an ad-hoc match query against all stored routes."""
    candidates = store.find_route_candidates(conn, query.start_point, query.end_point, query.radius)
    return match_routes(query, candidates, today=today)


# ═══════════════════════════════════════════════════════════════════════════
# Saved rider queries (inexperienced routes)
# ═══════════════════════════════════════════════════════════════════════════

def create_saved_query(
    conn: sqlite3.Connection,
    user_id: int,
    start_point,
    end_point,
    radius: float,
    days: Optional[Iterable] = None,
    arrival_datetime: Optional[datetime.datetime] = None,
    notify_owner: bool = False,
) -> InexperiencedRoute:
    store.get_user(conn, user_id)
    saved = InexperiencedRoute(
        owner=user_id,
        start_point=start_point,
        end_point=end_point,
        radius=radius,
        days=days,
        arrival_datetime=arrival_datetime,
        notify_owner=notify_owner,
    )
    saved = store.put_inexperienced_route(conn, saved)
    logger.info("User %s saved query %s", user_id, saved.id)
    return saved


def get_saved_queries(
    conn: sqlite3.Connection,
    user_id: int,
    saved_id: Optional[int] = None,
) -> list[InexperiencedRoute]:
    saved = store.get_inexperienced_routes(conn, user_id, saved_id)
    if saved_id is not None and not saved:
        raise NotFoundError("Inexperienced Route doesn't exist")
    return saved


def update_saved_query(
    conn: sqlite3.Connection,
    user_id: int,
    saved_id: int,
    updates: Mapping[str, Any],
) -> InexperiencedRoute:
    (saved,) = get_saved_queries(conn, user_id, saved_id)
    updated = dataclasses.replace(saved, **_pick(updates, SAVED_QUERY_FIELDS))
    return store.update_inexperienced_route(conn, updated)


def delete_saved_query(
    conn: sqlite3.Connection,
    user_id: int,
    saved_id: int,
    now: Optional[datetime.datetime] = None,
) -> int:
    get_saved_queries(conn, user_id, saved_id)
    return store.delete_inexperienced_route(conn, saved_id, now=now)


def run_saved_query(
    conn: sqlite3.Connection,
    user_id: int,
    saved_id: int,
    *,
    today: Optional[datetime.date] = None,
) -> list[MatchResult]:
    (saved,) = get_saved_queries(conn, user_id, saved_id)
    return match(conn, saved.to_match_query(), today=today)


# ═══════════════════════════════════════════════════════════════════════════
# BuddyRequests
# ═══════════════════════════════════════════════════════════════════════════

def create_buddy_request(
    conn: sqlite3.Connection,
    user_id: int,
    inexperienced_route_id: int,
    experienced_route_id: int,
    *,
    now: Optional[datetime.datetime] = None,
    today: Optional[datetime.date] = None,
) -> BuddyRequest:
    """Ask the owner of *experienced_route_id* to ride with the user.

    The route is matched again against the user's saved query, so the
    stored meeting/divorce details are always consistent with the matcher.
    """
    (saved,) = get_saved_queries(conn, user_id, inexperienced_route_id)
    route = store.get_route(conn, experienced_route_id)
    if route.owner == user_id:
        raise ValidationError("You can't send a BuddyRequest for your own route")

    results = match_routes(saved.to_match_query(), [route], today=today)
    if not results:
        raise ValidationError("This route doesn't match the Inexperienced Route")

    request = store.put_buddy_request(
        conn, build_buddy_request(results[0], user_id, saved.id, now=now)
    )
    logger.info(
        "User %s sent BuddyRequest %s to user %s", user_id, request.id, request.experienced_user
    )
    return request


def get_sent_buddy_requests(
    conn: sqlite3.Connection,
    user_id: int,
    request_id: Optional[int] = None,
) -> list[BuddyRequest]:
    """Requests the user sent, or one of them when *request_id* is given."""
    requests = store.get_buddy_requests(conn, owner_id=user_id, request_id=request_id)
    if request_id is not None and not requests:
        raise NotFoundError("BuddyRequest doesn't exist")
    return requests


def get_received_buddy_requests(
    conn: sqlite3.Connection,
    user_id: int,
    request_id: Optional[int] = None,
) -> list[BuddyRequest]:
    """Requests other users sent to the user."""
    requests = store.get_buddy_requests(conn, experienced_user_id=user_id, request_id=request_id)
    if request_id is not None and not requests:
        raise NotFoundError("BuddyRequest doesn't exist")
    return requests


def _get_participating(conn: sqlite3.Connection, user_id: int, request_id: int) -> BuddyRequest:
    found = store.get_buddy_requests(conn, request_id=request_id)
    if not found:
        raise NotFoundError("BuddyRequest doesn't exist")
    request = found[0]
    role_of(request, user_id)
    return request


def set_buddy_request_status(
    conn: sqlite3.Connection,
    user_id: int,
    request_id: int,
    status: Any,
    reason: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> BuddyRequest:
    request = _get_participating(conn, user_id, request_id)
    return store.update_buddy_request(conn, change_status(request, user_id, status, reason, now))


def update_buddy_request(
    conn: sqlite3.Connection,
    user_id: int,
    request_id: int,
    updates: Mapping[str, Any],
    now: Optional[datetime.datetime] = None,
) -> BuddyRequest:
    """Edit meeting/divorce details as the experienced cyclist."""
    request = _get_participating(conn, user_id, request_id)
    return store.update_buddy_request(conn, apply_updates(request, user_id, updates, now))


def review_buddy_request(
    conn: sqlite3.Connection,
    user_id: int,
    request_id: int,
    score: int,
    now: Optional[datetime.datetime] = None,
) -> ReviewOutcome:
    """Review a request as its owner and persist both riders' new counters.

    The two users and the request are written in the caller's session, so
    they either all change or none do.
    """
    request = _get_participating(conn, user_id, request_id)
    if user_id != request.owner:
        raise NotFoundError("BuddyRequest doesn't exist")
    owner = store.get_user(conn, request.owner)
    experienced_user = store.get_user(conn, request.experienced_user)

    outcome = review(user_id, request, owner, experienced_user, score, now=now)
    return ReviewOutcome(
        owner=store.update_user(conn, outcome.owner),
        experienced_user=store.update_user(conn, outcome.experienced_user),
        buddy_request=store.update_buddy_request(conn, outcome.buddy_request),
    )


def delete_buddy_request(conn: sqlite3.Connection, user_id: int, request_id: int) -> bool:
    """Delete a request the user sent.

    Returns False, and does nothing, when the user has no such request.
    """
    found = store.get_buddy_requests(conn, owner_id=user_id, request_id=request_id)
    if not found:
        return False
    status = found[0].status
    if status == BuddyRequestStatus.ACCEPTED:
        raise InvalidTransitionError(
            "Can't delete an accepted BuddyRequest. You should cancel it instead."
        )
    if status == BuddyRequestStatus.COMPLETED:
        raise InvalidTransitionError("Can't delete a completed BuddyRequest")
    store.delete_buddy_request(conn, request_id)
    logger.info("User %s deleted BuddyRequest %s", user_id, request_id)
    return True
