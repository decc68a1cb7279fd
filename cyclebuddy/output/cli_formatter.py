"""Rich CLI output for routes, matches, BuddyRequests and users."""

from __future__ import annotations

import datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cyclebuddy.models import BuddyRequest, Day, GeoPoint, InexperiencedRoute, MatchResult, Route, User

console = Console()

_STATUS_STYLES = {
    "pending": "yellow",
    "accepted": "green",
    "rejected": "red",
    "canceled": "dim",
    "completed": "cyan",
}


# ── Formatting helpers ───────────────────────────────────────────────

def _fmt_point(point: GeoPoint) -> str:
    return f"{point.latitude:.5f}, {point.longitude:.5f}"


def _fmt_days(days) -> str:
    """Days in week order, abbreviated: 'Mon Wed Fri'."""
    ordered = [d for d in Day if d in days]
    if not ordered:
        return "-"
    return " ".join(d.value[:3].capitalize() for d in ordered)


def _fmt_distance(metres: float) -> str:
    if metres >= 1000:
        return f"{metres / 1000:.1f} km"
    return f"{metres:.0f} m"


def _fmt_duration(delta: datetime.timedelta) -> str:
    minutes = int(delta.total_seconds() // 60)
    if minutes >= 60:
        return f"{minutes // 60}h {minutes % 60:02d}m"
    return f"{minutes}m"


def _fmt_time(value: datetime.datetime) -> str:
    return value.strftime("%a %H:%M")


# ── Output functions ─────────────────────────────────────────────────

def print_user(user: User) -> None:
    """Print a user's profile and reputation."""
    lines = [
        f"Name:               {user.name}",
        f"Email:              {user.email or '-'}",
        f"Distance travelled: {_fmt_distance(user.distance_travelled)}",
        f"Times helped:       {user.helped_count}",
        f"Users helped:       {user.users_helped}",
        f"Rating:             {user.rating:+.2f} ({user.rating_sum:+d})",
    ]
    console.print(Panel("\n".join(lines), title=f"User #{user.id}", border_style="blue"))


def print_routes(routes: list[Route]) -> None:
    table = Table(title="Routes")
    table.add_column("#", justify="right")
    table.add_column("Name")
    table.add_column("Owner", justify="right")
    table.add_column("Departs")
    table.add_column("Arrives")
    table.add_column("Days")
    table.add_column("Points", justify="right")
    for route in routes:
        table.add_row(
            str(route.id),
            route.name or "-",
            str(route.owner),
            route.departure_time.strftime("%H:%M"),
            route.arrival_time.strftime("%H:%M"),
            _fmt_days(route.days),
            str(len(route.polyline)),
        )
    console.print(table)


def print_saved_query(saved: InexperiencedRoute) -> None:
    arrival = saved.arrival_datetime.isoformat() if saved.arrival_datetime else "any"
    lines = [
        f"From:    {_fmt_point(saved.start_point)}",
        f"To:      {_fmt_point(saved.end_point)}",
        f"Radius:  {_fmt_distance(saved.radius)}",
        f"Days:    {_fmt_days(saved.days)}",
        f"Arrival: {arrival}",
    ]
    console.print(Panel("\n".join(lines), title=f"Saved query #{saved.id}", border_style="blue"))


def print_matches(results: list[MatchResult]) -> None:
    """Print one row per matching route, best first."""
    table = Table(title=f"{len(results)} matching routes")
    table.add_column("Route", justify="right")
    table.add_column("Name")
    table.add_column("Cyclist", justify="right")
    table.add_column("Meet at")
    table.add_column("Meet")
    table.add_column("Leave")
    table.add_column("Walk to", justify="right")
    table.add_column("Walk from", justify="right")
    table.add_column("Together", justify="right")
    table.add_column("Days")
    for r in results:
        table.add_row(
            str(r.route_id),
            r.route_name or "-",
            str(r.owner),
            _fmt_point(r.meeting_point),
            _fmt_time(r.meeting_time),
            _fmt_time(r.divorce_time),
            f"{_fmt_distance(r.distance_to_meeting_point)} ({_fmt_duration(r.time_to_meeting_point)})",
            f"{_fmt_distance(r.distance_from_divorce_point)} ({_fmt_duration(r.time_from_divorce_point)})",
            _fmt_distance(r.matched_segment_length),
            _fmt_days(r.days),
        )
    console.print(table)


def print_buddy_requests(requests: list[BuddyRequest], title: str) -> None:
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("From", justify="right")
    table.add_column("To", justify="right")
    table.add_column("Route")
    table.add_column("Meet")
    table.add_column("Leave")
    table.add_column("Length", justify="right")
    table.add_column("Status")
    table.add_column("Reason")
    for req in requests:
        style = _STATUS_STYLES.get(req.status.value, "")
        table.add_row(
            str(req.id),
            str(req.owner),
            str(req.experienced_user),
            req.experienced_route_name or str(req.experienced_route),
            _fmt_time(req.meeting_time),
            _fmt_time(req.divorce_time),
            _fmt_distance(req.length),
            f"[{style}]{req.status.value}[/{style}]" if style else req.status.value,
            req.reason or "",
        )
    console.print(table)


def print_no_results(message: str) -> None:
    console.print(f"[yellow]{message}[/yellow]")
