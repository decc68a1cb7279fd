"""BuddyRequest lifecycle: creation, status transitions and field edits.

Every function here is pure: it takes a BuddyRequest and returns a new one
(via ``dataclasses.replace``) or raises.  A failed call never touches the
request it was given, so callers only persist what comes back.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
from enum import Enum
from typing import Any, Mapping, Optional

from cyclebuddy.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from cyclebuddy.models import BuddyRequest, BuddyRequestStatus, MatchResult

logger = logging.getLogger(__name__)

S = BuddyRequestStatus

# Fields the experienced cyclist may change after creation (until completion).
EDITABLE_FIELDS = frozenset({
    "meeting_time",
    "meeting_point",
    "meeting_point_name",
    "divorce_time",
    "divorce_point",
    "divorce_point_name",
})


class Role(str, Enum):
    """How a user relates to a BuddyRequest."""
    OWNER = "owner"  # the requester
    EXPERIENCED_USER = "experiencedUser"


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def role_of(request: BuddyRequest, user_id: int) -> Role:
    """Return the user's role, or NotFoundError if they are not a participant."""
    if user_id == request.experienced_user:
        return Role.EXPERIENCED_USER
    if user_id == request.owner:
        return Role.OWNER
    raise NotFoundError("BuddyRequest doesn't exist")


def build_buddy_request(
    match: MatchResult,
    owner: int,
    inexperienced_route: Optional[int],
    now: Optional[datetime.datetime] = None,
) -> BuddyRequest:
    """Turn a MatchResult into a new, pending BuddyRequest."""
    now = now or _now()
    return BuddyRequest(
        owner=owner,
        experienced_user=match.owner,
        experienced_route=match.route_id,
        experienced_route_name=match.route_name,
        inexperienced_route=inexperienced_route,
        meeting_point=match.meeting_point,
        divorce_point=match.divorce_point,
        meeting_time=match.meeting_time,
        divorce_time=match.divorce_time,
        average_speed=match.average_speed,
        route=match.segment,
        length=match.matched_segment_length,
        status=S.PENDING,
        reason="",
        review=0,
        created=now,
        updated=now,
    )


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

def _parse_status(status: Any) -> BuddyRequestStatus:
    if isinstance(status, BuddyRequestStatus):
        return status
    try:
        return BuddyRequestStatus(str(status).strip().lower())
    except ValueError:
        if str(status).strip().lower() == "cancelled":
            raise InvalidTransitionError(
                f"Invalid status '{status}', did you mean 'canceled'?"
            )
        raise InvalidTransitionError(
            f"Invalid status '{status}'. "
            "Valid statuses are 'accepted', 'rejected' and 'canceled'"
        )


def _has_reason(reason: Optional[str]) -> bool:
    return reason is not None and reason.strip() != ""


def _check_transition(
    current: BuddyRequestStatus,
    requested: BuddyRequestStatus,
    role: Role,
    reason: Optional[str],
) -> None:
    """Raise unless (current → requested) is allowed for *role*."""
    if requested == S.PENDING:
        raise InvalidTransitionError("Can't reset a BuddyRequest's status to 'pending'")
    if requested == S.COMPLETED:
        raise InvalidTransitionError(
            "Can't set a BuddyRequest's status to 'completed'. "
            "This only happens when a user submits a review."
        )
    if current == S.COMPLETED:
        raise InvalidTransitionError("Can't change the status of a completed BuddyRequest")

    if requested == S.ACCEPTED:
        if current in (S.REJECTED, S.CANCELED):
            raise InvalidTransitionError(f"Can't accept a {current.value} BuddyRequest")
        if role != Role.EXPERIENCED_USER:
            raise AuthorizationError("Only the experienced cyclist can accept a BuddyRequest")
        return

    if requested == S.REJECTED:
        if current == S.ACCEPTED:
            raise InvalidTransitionError(
                "Can't reject an accepted BuddyRequest. You should cancel it instead."
            )
        if current == S.CANCELED:
            raise InvalidTransitionError("Can't reject a canceled BuddyRequest")
        if role != Role.EXPERIENCED_USER:
            raise AuthorizationError("Only the experienced cyclist can reject a BuddyRequest")
        return

    # requested == CANCELED
    if current == S.CANCELED:
        return
    if current == S.REJECTED and role != Role.EXPERIENCED_USER:
        raise InvalidTransitionError("Can't cancel a rejected BuddyRequest")
    if not _has_reason(reason):
        raise InvalidTransitionError("A reason needs to be given to cancel a BuddyRequest")


def change_status(
    request: BuddyRequest,
    user_id: int,
    status: Any,
    reason: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> BuddyRequest:
    """Apply a status change requested by *user_id*.

    Parameters
    ----------
    request : BuddyRequest
        The stored request; never modified.
    user_id : int
        The (already authenticated) user asking for the change.
    status : str or BuddyRequestStatus
        The requested new status.
    reason : str, optional
        Replaces the stored reason when given.  Required to cancel, except
        when the request is already canceled.

    Returns
    -------
    BuddyRequest
        A copy with the new status, reason and ``updated`` time.
    """
    role = role_of(request, user_id)
    if reason is not None and not isinstance(reason, str):
        raise ValidationError("A reason must be text")
    requested = _parse_status(status)
    _check_transition(request.status, requested, role, reason)

    changes: dict[str, Any] = {"status": requested, "updated": now or _now()}
    if reason is not None:
        changes["reason"] = reason
    logger.info(
        "BuddyRequest %s: %s -> %s by %s",
        request.id, request.status.value, requested.value, role.value,
    )
    return dataclasses.replace(request, **changes)


# ---------------------------------------------------------------------------
# Field edits
# ---------------------------------------------------------------------------

def apply_updates(
    request: BuddyRequest,
    user_id: int,
    updates: Mapping[str, Any],
    now: Optional[datetime.datetime] = None,
) -> BuddyRequest:
    """Apply meeting/divorce edits made by the experienced cyclist.

    Keys outside EDITABLE_FIELDS are ignored.  The requester cannot see the
    request from this side and gets NotFoundError.
    """
    if role_of(request, user_id) != Role.EXPERIENCED_USER:
        raise NotFoundError("BuddyRequest doesn't exist")
    if request.status == S.COMPLETED:
        raise InvalidTransitionError("Can't update a completed BuddyRequest")

    changes = {key: value for key, value in updates.items() if key in EDITABLE_FIELDS}
    ignored = sorted(set(updates) - EDITABLE_FIELDS)
    if ignored:
        logger.debug("Ignoring read-only BuddyRequest fields: %s", ", ".join(ignored))

    changes["updated"] = now or _now()
    # replace() re-runs __post_init__, which validates times and points
    return dataclasses.replace(request, **changes)
