"""End-to-end tests of the engine operations over a real SQLite file."""

from __future__ import annotations

import datetime

import pytest

from cyclebuddy import engine
from cyclebuddy.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from cyclebuddy.models import BuddyRequestStatus, Day, GeoPoint, MatchQuery
from cyclebuddy.store import database as store
from cyclebuddy.store.database import Database

MONDAY = datetime.date(2024, 1, 1)


@pytest.fixture
def conn(tmp_path):
    db = Database(tmp_path / "engine.db")
    db.initialise()
    with db.session() as connection:
        yield connection


@pytest.fixture
def world(conn):
    """A guide riding [[0,0],[1,0],[1,1]] on Mondays and a rider wanting (0,0)->(1,1)."""
    guide = engine.create_user(conn, "Guide")
    rider = engine.create_user(conn, "Rider")
    route = engine.create_route(
        conn,
        guide.id,
        [[0, 0], [1, 0], [1, 1]],
        datetime.time(0, 10),
        datetime.time(0, 20),
        days=["monday"],
        name="L-shape",
    )
    saved = engine.create_saved_query(conn, rider.id, [0, 0], [1, 1], 500, days=["monday"])
    return guide, rider, route, saved


def _send(conn, world):
    guide, rider, route, saved = world
    return engine.create_buddy_request(conn, rider.id, saved.id, route.id, today=MONDAY)


# ═══════════════════════════════════════════════════════════════════════
# Routes
# ═══════════════════════════════════════════════════════════════════════


class TestRoutes:
    def test_route_needs_existing_owner(self, conn):
        with pytest.raises(NotFoundError):
            engine.create_route(conn, 99, [[0, 0], [0, 1]], datetime.time(8), datetime.time(9))

    def test_update_own_route(self, conn, world):
        guide, _, route, _ = world
        updated = engine.update_route(conn, guide.id, route.id, {"name": "Renamed", "owner": 77})
        assert updated.name == "Renamed"
        assert updated.owner == guide.id

    def test_update_revalidates(self, conn, world):
        guide, _, route, _ = world
        with pytest.raises(ValidationError):
            engine.update_route(conn, guide.id, route.id, {"arrival_time": datetime.time(0, 5)})

    def test_other_users_route_is_not_found(self, conn, world):
        _, rider, route, _ = world
        with pytest.raises(NotFoundError):
            engine.update_route(conn, rider.id, route.id, {"name": "Mine now"})
        with pytest.raises(NotFoundError):
            engine.delete_route(conn, rider.id, route.id)

    def test_nearby(self, conn, world):
        _, _, route, _ = world
        found = engine.get_nearby_routes(conn, GeoPoint(0.5, 0.002), 500)
        assert [r.id for r in found] == [route.id]
        assert engine.get_nearby_routes(conn, GeoPoint(0.5, 0.5), 500) == []

    def test_nearby_radius_bounds(self, conn):
        with pytest.raises(ValidationError):
            engine.get_nearby_routes(conn, GeoPoint(0, 0), 0)


# ═══════════════════════════════════════════════════════════════════════
# Matching
# ═══════════════════════════════════════════════════════════════════════


class TestMatching:
    def test_monday_scenario(self, conn, world):
        guide, rider, route, saved = world
        results = engine.run_saved_query(conn, rider.id, saved.id, today=MONDAY)
        assert len(results) == 1
        assert results[0].owner == guide.id
        assert results[0].route_id == route.id
        assert results[0].days == {Day.MONDAY}

    def test_ad_hoc_query(self, conn, world):
        query = MatchQuery(start_point=[0, 0], end_point=[1, 1], radius=500, days=["tuesday"])
        assert engine.match(conn, query, today=MONDAY) == []

    def test_radius_out_of_bounds(self, conn):
        query = MatchQuery(start_point=[0, 0], end_point=[1, 1], radius=2001)
        with pytest.raises(ValidationError):
            engine.match(conn, query)

    def test_saved_query_is_private(self, conn, world):
        guide, _, _, saved = world
        with pytest.raises(NotFoundError):
            engine.run_saved_query(conn, guide.id, saved.id)

    def test_update_saved_query(self, conn, world):
        _, rider, _, saved = world
        updated = engine.update_saved_query(conn, rider.id, saved.id, {"radius": 100})
        assert updated.radius == 100
        with pytest.raises(ValidationError):
            engine.update_saved_query(conn, rider.id, saved.id, {"radius": 5000})


# ═══════════════════════════════════════════════════════════════════════
# BuddyRequests
# ═══════════════════════════════════════════════════════════════════════


class TestCreateBuddyRequest:
    def test_create(self, conn, world):
        guide, rider, route, saved = world
        req = _send(conn, world)
        assert req.status == BuddyRequestStatus.PENDING
        assert (req.owner, req.experienced_user) == (rider.id, guide.id)
        assert req.experienced_route_name == "L-shape"
        assert req.inexperienced_route == saved.id
        assert req.length > 200_000

    def test_own_route(self, conn, world):
        guide, _, route, _ = world
        mine = engine.create_saved_query(conn, guide.id, [0, 0], [1, 1], 500)
        with pytest.raises(ValidationError):
            engine.create_buddy_request(conn, guide.id, mine.id, route.id, today=MONDAY)

    def test_route_must_match(self, conn, world):
        _, rider, route, _ = world
        backwards = engine.create_saved_query(conn, rider.id, [1, 1], [0, 0], 500)
        with pytest.raises(ValidationError):
            engine.create_buddy_request(conn, rider.id, backwards.id, route.id, today=MONDAY)

    def test_missing_route(self, conn, world):
        _, rider, _, saved = world
        with pytest.raises(NotFoundError):
            engine.create_buddy_request(conn, rider.id, saved.id, 999)


class TestListing:
    def test_sent_and_received(self, conn, world):
        guide, rider, _, _ = world
        req = _send(conn, world)
        assert [r.id for r in engine.get_sent_buddy_requests(conn, rider.id)] == [req.id]
        assert [r.id for r in engine.get_received_buddy_requests(conn, guide.id)] == [req.id]
        assert engine.get_sent_buddy_requests(conn, guide.id) == []

    def test_specific_id_outside_view(self, conn, world):
        guide, _, _, _ = world
        req = _send(conn, world)
        with pytest.raises(NotFoundError):
            engine.get_sent_buddy_requests(conn, guide.id, req.id)


class TestStatusChanges:
    def test_accept_then_cancel(self, conn, world):
        guide, rider, _, _ = world
        req = _send(conn, world)
        accepted = engine.set_buddy_request_status(conn, guide.id, req.id, "accepted")
        assert accepted.status == BuddyRequestStatus.ACCEPTED
        canceled = engine.set_buddy_request_status(conn, rider.id, req.id, "canceled", "Flat tyre")
        assert canceled.status == BuddyRequestStatus.CANCELED
        assert canceled.reason == "Flat tyre"

    def test_refused_transition_leaves_store_unchanged(self, conn, world):
        _, rider, _, _ = world
        req = _send(conn, world)
        with pytest.raises(AuthorizationError):
            engine.set_buddy_request_status(conn, rider.id, req.id, "accepted", "please")
        (stored,) = engine.get_sent_buddy_requests(conn, rider.id, req.id)
        assert stored.status == BuddyRequestStatus.PENDING
        assert stored.reason == ""
        assert stored.version == req.version

    def test_stranger(self, conn, world):
        stranger = engine.create_user(conn, "Stranger")
        req = _send(conn, world)
        with pytest.raises(NotFoundError):
            engine.set_buddy_request_status(conn, stranger.id, req.id, "canceled", "x")


class TestEdits:
    def test_experienced_user_renames_meeting_point(self, conn, world):
        guide, _, _, _ = world
        req = _send(conn, world)
        updated = engine.update_buddy_request(conn, guide.id, req.id, {"meeting_point_name": "Cafe"})
        assert updated.meeting_point_name == "Cafe"
        (stored,) = engine.get_received_buddy_requests(conn, guide.id, req.id)
        assert stored.meeting_point_name == "Cafe"

    def test_naive_edit_of_timezone_aware_request(self, conn, world):
        guide, rider, route, _ = world
        arrival = datetime.datetime(2024, 1, 1, 8, 0, tzinfo=datetime.timezone(datetime.timedelta(hours=1)))
        saved = engine.create_saved_query(conn, rider.id, [0, 0], [1, 1], 500, arrival_datetime=arrival)
        req = engine.create_buddy_request(conn, rider.id, saved.id, route.id)
        assert req.meeting_time.tzinfo is not None

        with pytest.raises(ValidationError, match="timezone"):
            engine.update_buddy_request(
                conn, guide.id, req.id, {"meeting_time": datetime.datetime(2024, 1, 1, 0, 12)}
            )
        (stored,) = engine.get_received_buddy_requests(conn, guide.id, req.id)
        assert stored.meeting_time == req.meeting_time

    def test_owner_cannot_edit(self, conn, world):
        _, rider, _, _ = world
        req = _send(conn, world)
        with pytest.raises(NotFoundError):
            engine.update_buddy_request(conn, rider.id, req.id, {"meeting_point_name": "Cafe"})


class TestReviews:
    def test_review_and_re_review(self, conn, world):
        guide, rider, _, _ = world
        req = _send(conn, world)
        engine.set_buddy_request_status(conn, guide.id, req.id, "accepted")

        first = engine.review_buddy_request(conn, rider.id, req.id, 1)
        assert first.buddy_request.status == BuddyRequestStatus.COMPLETED
        stored_guide = engine.get_user(conn, guide.id)
        stored_rider = engine.get_user(conn, rider.id)
        assert stored_guide.users_helped == 1
        assert stored_guide.rating == 1.0
        assert stored_rider.helped_count == 1
        assert stored_rider.distance_travelled == pytest.approx(req.length)

        engine.review_buddy_request(conn, rider.id, req.id, -1)
        stored_guide = engine.get_user(conn, guide.id)
        assert stored_guide.users_helped == 1
        assert stored_guide.rating_sum == -1
        assert engine.get_user(conn, rider.id).helped_count == 1

    def test_experienced_user_cannot_review(self, conn, world):
        guide, _, _, _ = world
        req = _send(conn, world)
        engine.set_buddy_request_status(conn, guide.id, req.id, "accepted")
        with pytest.raises(NotFoundError):
            engine.review_buddy_request(conn, guide.id, req.id, 1)

    def test_pending_cannot_be_reviewed(self, conn, world):
        _, rider, _, _ = world
        req = _send(conn, world)
        with pytest.raises(InvalidTransitionError):
            engine.review_buddy_request(conn, rider.id, req.id, 1)


class TestDeleteBuddyRequest:
    def test_delete_pending(self, conn, world):
        _, rider, _, _ = world
        req = _send(conn, world)
        assert engine.delete_buddy_request(conn, rider.id, req.id) is True
        assert engine.get_sent_buddy_requests(conn, rider.id) == []

    def test_invisible_is_noop(self, conn, world):
        guide, _, _, _ = world
        req = _send(conn, world)
        assert engine.delete_buddy_request(conn, guide.id, req.id) is False
        assert store.get_buddy_requests(conn, request_id=req.id)

    def test_accepted_must_be_canceled(self, conn, world):
        guide, rider, _, _ = world
        req = _send(conn, world)
        engine.set_buddy_request_status(conn, guide.id, req.id, "accepted")
        with pytest.raises(InvalidTransitionError, match="cancel it instead"):
            engine.delete_buddy_request(conn, rider.id, req.id)


class TestCascadeThroughEngine:
    def test_delete_route_cancels_request(self, conn, world):
        guide, rider, route, _ = world
        req = _send(conn, world)
        assert engine.delete_route(conn, guide.id, route.id) == 1
        (stored,) = engine.get_sent_buddy_requests(conn, rider.id, req.id)
        assert stored.status == BuddyRequestStatus.CANCELED
        assert stored.reason

    def test_delete_saved_query_cancels_request(self, conn, world):
        _, rider, _, saved = world
        _send(conn, world)
        assert engine.delete_saved_query(conn, rider.id, saved.id) == 1

    def test_delete_user(self, conn, world):
        guide, rider, route, _ = world
        _send(conn, world)
        engine.delete_user(conn, rider.id)
        with pytest.raises(NotFoundError):
            engine.get_user(conn, rider.id)
        assert engine.get_saved_queries(conn, rider.id) == []
        assert engine.get_routes(conn, guide.id)[0].id == route.id
