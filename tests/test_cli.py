"""Tests for the typer CLI."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from cyclebuddy.cli import app

runner = CliRunner()


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "cli.db"
    result = runner.invoke(app, ["--db", str(path), "init"])
    assert result.exit_code == 0, result.output
    return path


def _run(db_path, *args):
    return runner.invoke(app, ["--db", str(db_path), *args])


def _seed(db_path):
    """Guide (#1) with a Monday route (#1); rider (#2) with a saved query (#1)."""
    assert _run(db_path, "add-user", "Guide").exit_code == 0
    assert _run(db_path, "add-user", "Rider").exit_code == 0
    result = _run(
        db_path, "add-route", "--user", "1",
        "--point", "0,0", "--point", "1,0", "--point", "1,1",
        "--departure", "00:10", "--arrival", "00:20",
        "--day", "monday", "--name", "L-shape",
    )
    assert result.exit_code == 0, result.output
    result = _run(db_path, "add-query", "0,0", "1,1", "--user", "2", "--radius", "500", "--arrival", "2024-01-01T09:00")
    assert result.exit_code == 0, result.output


class TestSetup:
    def test_init(self, tmp_path):
        path = tmp_path / "new.db"
        result = runner.invoke(app, ["--db", str(path), "init"])
        assert result.exit_code == 0
        assert path.exists()

    def test_missing_database(self, tmp_path):
        result = runner.invoke(app, ["--db", str(tmp_path / "nope.db"), "add-user", "Ann"])
        assert result.exit_code == 1
        assert "Run 'init' first" in result.output


class TestUsers:
    def test_add_and_show(self, db_path):
        result = _run(db_path, "add-user", "Ann", "--email", "ann@example.com")
        assert result.exit_code == 0
        assert "Created user #1" in result.output

        result = _run(db_path, "show-user", "1")
        assert result.exit_code == 0
        assert "Ann" in result.output

    def test_show_missing(self, db_path):
        result = _run(db_path, "show-user", "99")
        assert result.exit_code == 1
        assert "User doesn't exist" in result.output

    def test_delete(self, db_path):
        _run(db_path, "add-user", "Ann")
        assert _run(db_path, "delete-user", "1").exit_code == 0
        assert _run(db_path, "show-user", "1").exit_code == 1


class TestRoutes:
    def test_add_route(self, db_path):
        _seed(db_path)
        result = _run(db_path, "routes", "--user", "1")
        assert result.exit_code == 0
        assert "L-shape" in result.output

    def test_bad_point(self, db_path):
        _run(db_path, "add-user", "Ann")
        result = _run(
            db_path, "add-route", "--user", "1", "--point", "nowhere", "--point", "1,1",
            "--departure", "08:00", "--arrival", "09:00",
        )
        assert result.exit_code != 0

    def test_arrival_before_departure(self, db_path):
        _run(db_path, "add-user", "Ann")
        result = _run(
            db_path, "add-route", "--user", "1", "--point", "0,0", "--point", "1,1",
            "--departure", "09:00", "--arrival", "08:00",
        )
        assert result.exit_code == 1
        assert "Arrival time must be after departure time" in result.output

    def test_nearby(self, db_path):
        _seed(db_path)
        result = _run(db_path, "nearby", "0.5,0.002", "--radius", "500")
        assert result.exit_code == 0
        assert "L-shape" in result.output

    def test_delete_someone_elses_route(self, db_path):
        _seed(db_path)
        result = _run(db_path, "delete-route", "1", "--user", "2")
        assert result.exit_code == 1
        assert "Route doesn't exist" in result.output


class TestMatching:
    def test_match(self, db_path):
        _seed(db_path)
        result = _run(db_path, "match", "0,0", "1,1", "--radius", "500", "--arrival", "2024-01-01T09:00")
        assert result.exit_code == 0
        assert "1 matching routes" in result.output

    def test_match_radius_out_of_bounds(self, db_path):
        result = _run(db_path, "match", "0,0", "1,1", "--radius", "5000")
        assert result.exit_code == 1
        assert "Radius out of bounds" in result.output

    def test_run_query(self, db_path):
        _seed(db_path)
        result = _run(db_path, "run-query", "1", "--user", "2")
        assert result.exit_code == 0
        assert "1 matching routes" in result.output


class TestBuddyRequestFlow:
    def test_request_accept_review(self, db_path):
        _seed(db_path)
        result = _run(db_path, "request", "1", "1", "--user", "2")
        assert result.exit_code == 0, result.output
        assert "Sent BuddyRequest #1" in result.output

        result = _run(db_path, "requests", "--user", "1", "--received")
        assert result.exit_code == 0
        assert "Received BuddyRequests" in result.output

        result = _run(db_path, "status", "1", "accepted", "--user", "2")
        assert result.exit_code == 1
        assert "Only the experienced cyclist can accept" in result.output

        result = _run(db_path, "status", "1", "accepted", "--user", "1")
        assert result.exit_code == 0
        assert "is now accepted" in result.output

        result = _run(db_path, "review", "1", "1", "--user", "2")
        assert result.exit_code == 0, result.output
        assert "Reviewed BuddyRequest #1" in result.output

    def test_cancel_needs_reason(self, db_path):
        _seed(db_path)
        _run(db_path, "request", "1", "1", "--user", "2")
        result = _run(db_path, "status", "1", "canceled", "--user", "2")
        assert result.exit_code == 1
        assert "A reason needs to be given" in result.output

        result = _run(db_path, "status", "1", "canceled", "--user", "2", "--reason", "Rain")
        assert result.exit_code == 0

    def test_edit_and_delete(self, db_path):
        _seed(db_path)
        _run(db_path, "request", "1", "1", "--user", "2")
        result = _run(db_path, "edit-request", "1", "--user", "1", "--meeting-point-name", "Cafe")
        assert result.exit_code == 0, result.output

        result = _run(db_path, "delete-request", "1", "--user", "2")
        assert result.exit_code == 0
        assert "Deleted BuddyRequest #1" in result.output
