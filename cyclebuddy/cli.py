"""CLI entry point for the cycle buddy engine."""

from __future__ import annotations

import datetime
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console

from cyclebuddy import engine
from cyclebuddy.config import DB_PATH
from cyclebuddy.errors import CycleBuddyError
from cyclebuddy.models import GeoPoint, MatchQuery
from cyclebuddy.output.cli_formatter import (
    print_buddy_requests,
    print_matches,
    print_no_results,
    print_routes,
    print_saved_query,
    print_user,
)
from cyclebuddy.store.database import Database

app = typer.Typer(help="Cycle buddy: match riders with experienced cyclists on their routes.")
console = Console()


# ── Argument parsing ─────────────────────────────────────────────────

def _parse_point(value: str) -> GeoPoint:
    """Parse 'lat,lon' into a GeoPoint."""
    try:
        lat, lon = (float(part) for part in value.split(","))
        return GeoPoint(lat, lon)
    except (ValueError, CycleBuddyError):
        raise typer.BadParameter(f"Invalid point: '{value}'. Use LAT,LON.")


def _parse_time(value: str) -> datetime.time:
    try:
        return datetime.time.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Invalid time: '{value}'. Use HH:MM.")


def _parse_datetime(value: Optional[str]) -> Optional[datetime.datetime]:
    if value is None:
        return None
    try:
        return datetime.datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Invalid date-time: '{value}'. Use YYYY-MM-DDTHH:MM.")


@contextmanager
def _session(ctx: typer.Context) -> Iterator:
    """Open a database session, turning domain errors into a clean exit."""
    db: Database = ctx.obj
    if not db.path.exists():
        console.print(f"[red]Error:[/red] Run 'init' first, no database at {db.path}")
        raise typer.Exit(1)
    try:
        with db.session() as conn:
            yield conn
    except CycleBuddyError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(1)


@app.callback()
def main(
    ctx: typer.Context,
    db: Path = typer.Option(DB_PATH, "--db", help="Path to the SQLite database"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Match riders with experienced cyclists."""
    # ── Logging setup ─────────────────────────────────────────────────
    level = logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    ctx.obj = Database(db)


@app.command()
def init(ctx: typer.Context) -> None:
    """Create the database."""
    db: Database = ctx.obj
    db.initialise()
    console.print(f"Database ready at {db.path}")


# ── Users ────────────────────────────────────────────────────────────

@app.command("add-user")
def add_user(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name"),
    email: str = typer.Option("", "--email", help="Contact email"),
) -> None:
    """Create a user."""
    with _session(ctx) as conn:
        user = engine.create_user(conn, name, email)
    console.print(f"Created user #{user.id}")


@app.command("show-user")
def show_user(ctx: typer.Context, user_id: int = typer.Argument(...)) -> None:
    """Show a user's profile and reputation."""
    with _session(ctx) as conn:
        user = engine.get_user(conn, user_id)
    print_user(user)


@app.command("delete-user")
def delete_user(ctx: typer.Context, user_id: int = typer.Argument(...)) -> None:
    """Delete a user, their routes and saved queries."""
    with _session(ctx) as conn:
        engine.delete_user(conn, user_id)
    console.print(f"Deleted user #{user_id}")


# ── Routes ───────────────────────────────────────────────────────────

@app.command("add-route")
def add_route(
    ctx: typer.Context,
    user: int = typer.Option(..., "--user", "-u", help="Owner's user id"),
    point: list[str] = typer.Option(..., "--point", "-p", help="Route point LAT,LON (repeatable, in order)"),
    departure: str = typer.Option(..., "--departure", help="Departure time HH:MM"),
    arrival: str = typer.Option(..., "--arrival", help="Arrival time HH:MM"),
    day: list[str] = typer.Option([], "--day", "-d", help="Day the route is ridden (repeatable)"),
    name: str = typer.Option("", "--name", help="Route name"),
) -> None:
    """Save a route you ride regularly."""
    polyline = [_parse_point(p) for p in point]
    with _session(ctx) as conn:
        route = engine.create_route(
            conn,
            user,
            polyline,
            _parse_time(departure),
            _parse_time(arrival),
            days=day,
            name=name,
        )
    console.print(f"Created route #{route.id}")


@app.command("routes")
def list_routes(
    ctx: typer.Context,
    user: int = typer.Option(..., "--user", "-u", help="Owner's user id"),
) -> None:
    """List your routes."""
    with _session(ctx) as conn:
        routes = engine.get_routes(conn, user)
    if not routes:
        print_no_results("No routes yet.")
        return
    print_routes(routes)


@app.command("delete-route")
def delete_route(
    ctx: typer.Context,
    route_id: int = typer.Argument(...),
    user: int = typer.Option(..., "--user", "-u", help="Owner's user id"),
) -> None:
    """Delete one of your routes, canceling open requests on it."""
    with _session(ctx) as conn:
        canceled = engine.delete_route(conn, user, route_id)
    console.print(f"Deleted route #{route_id} ({canceled} BuddyRequests canceled)")


@app.command()
def nearby(
    ctx: typer.Context,
    point: str = typer.Argument(..., help="LAT,LON"),
    radius: float = typer.Option(1000, "--radius", "-r", help="Search radius in metres"),
) -> None:
    """Find routes passing near a point."""
    with _session(ctx) as conn:
        routes = engine.get_nearby_routes(conn, _parse_point(point), radius)
    if not routes:
        print_no_results("No routes nearby.")
        return
    print_routes(routes)


# ── Matching ─────────────────────────────────────────────────────────

@app.command()
def match(
    ctx: typer.Context,
    start: str = typer.Argument(..., help="Start LAT,LON"),
    end: str = typer.Argument(..., help="End LAT,LON"),
    radius: float = typer.Option(1000, "--radius", "-r", help="How far you'll go to meet a route, in metres"),
    day: list[str] = typer.Option([], "--day", "-d", help="Acceptable day (repeatable, default any)"),
    arrival: Optional[str] = typer.Option(None, "--arrival", help="When you want to arrive, YYYY-MM-DDTHH:MM"),
) -> None:
    """Find routes that can take you from START to END."""
    with _session(ctx) as conn:
        query = MatchQuery(
            start_point=_parse_point(start),
            end_point=_parse_point(end),
            radius=radius,
            days=day or None,
            target_datetime=_parse_datetime(arrival),
        )
        results = engine.match(conn, query)
    if not results:
        print_no_results("No matching routes.")
        return
    print_matches(results)


@app.command("add-query")
def add_query(
    ctx: typer.Context,
    start: str = typer.Argument(..., help="Start LAT,LON"),
    end: str = typer.Argument(..., help="End LAT,LON"),
    user: int = typer.Option(..., "--user", "-u", help="Your user id"),
    radius: float = typer.Option(1000, "--radius", "-r", help="Search radius in metres"),
    day: list[str] = typer.Option([], "--day", "-d", help="Acceptable day (repeatable, default any)"),
    arrival: Optional[str] = typer.Option(None, "--arrival", help="When you want to arrive, YYYY-MM-DDTHH:MM"),
    notify: bool = typer.Option(False, "--notify", help="Notify me about new matches"),
) -> None:
    """Save a journey so it can be matched and requested later."""
    with _session(ctx) as conn:
        saved = engine.create_saved_query(
            conn,
            user,
            _parse_point(start),
            _parse_point(end),
            radius,
            days=day or None,
            arrival_datetime=_parse_datetime(arrival),
            notify_owner=notify,
        )
    console.print(f"Saved query #{saved.id}")
    print_saved_query(saved)


@app.command("run-query")
def run_query(
    ctx: typer.Context,
    query_id: int = typer.Argument(...),
    user: int = typer.Option(..., "--user", "-u", help="Your user id"),
) -> None:
    """Match a saved journey against all routes."""
    with _session(ctx) as conn:
        results = engine.run_saved_query(conn, user, query_id)
    if not results:
        print_no_results("No matching routes.")
        return
    print_matches(results)


# ── BuddyRequests ────────────────────────────────────────────────────

@app.command()
def request(
    ctx: typer.Context,
    query_id: int = typer.Argument(..., help="Your saved query"),
    route_id: int = typer.Argument(..., help="The route you want to join"),
    user: int = typer.Option(..., "--user", "-u", help="Your user id"),
) -> None:
    """Ask a route's owner to ride with you."""
    with _session(ctx) as conn:
        buddy_request = engine.create_buddy_request(conn, user, query_id, route_id)
    console.print(f"Sent BuddyRequest #{buddy_request.id}")


@app.command()
def requests(
    ctx: typer.Context,
    user: int = typer.Option(..., "--user", "-u", help="Your user id"),
    received: bool = typer.Option(False, "--received", help="Show requests sent to you"),
) -> None:
    """List BuddyRequests you sent (or received)."""
    with _session(ctx) as conn:
        if received:
            found = engine.get_received_buddy_requests(conn, user)
        else:
            found = engine.get_sent_buddy_requests(conn, user)
    if not found:
        print_no_results("No BuddyRequests.")
        return
    print_buddy_requests(found, "Received BuddyRequests" if received else "Sent BuddyRequests")


@app.command()
def status(
    ctx: typer.Context,
    request_id: int = typer.Argument(...),
    new_status: str = typer.Argument(..., help="accepted, rejected or canceled"),
    user: int = typer.Option(..., "--user", "-u", help="Your user id"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Why (required to cancel)"),
) -> None:
    """Accept, reject or cancel a BuddyRequest."""
    with _session(ctx) as conn:
        updated = engine.set_buddy_request_status(conn, user, request_id, new_status, reason)
    console.print(f"BuddyRequest #{updated.id} is now {updated.status.value}")


@app.command("edit-request")
def edit_request(
    ctx: typer.Context,
    request_id: int = typer.Argument(...),
    user: int = typer.Option(..., "--user", "-u", help="Your user id"),
    meeting_time: Optional[str] = typer.Option(None, "--meeting-time", help="YYYY-MM-DDTHH:MM"),
    divorce_time: Optional[str] = typer.Option(None, "--divorce-time", help="YYYY-MM-DDTHH:MM"),
    meeting_point_name: Optional[str] = typer.Option(None, "--meeting-point-name"),
    divorce_point_name: Optional[str] = typer.Option(None, "--divorce-point-name"),
) -> None:
    """Change meeting or divorce details of a request you received."""
    updates = {
        "meeting_time": _parse_datetime(meeting_time),
        "divorce_time": _parse_datetime(divorce_time),
        "meeting_point_name": meeting_point_name,
        "divorce_point_name": divorce_point_name,
    }
    updates = {key: value for key, value in updates.items() if value is not None}
    with _session(ctx) as conn:
        updated = engine.update_buddy_request(conn, user, request_id, updates)
    console.print(f"Updated BuddyRequest #{updated.id}")


@app.command("delete-request")
def delete_request(
    ctx: typer.Context,
    request_id: int = typer.Argument(...),
    user: int = typer.Option(..., "--user", "-u", help="Your user id"),
) -> None:
    """Delete a request you sent."""
    with _session(ctx) as conn:
        deleted = engine.delete_buddy_request(conn, user, request_id)
    if deleted:
        console.print(f"Deleted BuddyRequest #{request_id}")
    else:
        print_no_results("Nothing to delete.")


@app.command()
def review(
    ctx: typer.Context,
    request_id: int = typer.Argument(...),
    score: int = typer.Argument(..., help="+1 or -1"),
    user: int = typer.Option(..., "--user", "-u", help="Your user id"),
) -> None:
    """Review the cyclist who helped you; completes the request."""
    with _session(ctx) as conn:
        outcome = engine.review_buddy_request(conn, user, request_id, score)
    console.print(f"Reviewed BuddyRequest #{request_id}")
    print_user(outcome.experienced_user)


if __name__ == "__main__":
    app()
