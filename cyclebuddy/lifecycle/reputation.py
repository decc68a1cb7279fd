"""Reviews and the reputation counters they maintain.

A review completes a BuddyRequest.  The first review credits both riders
with the shared distance and bumps their help counters; later reviews of the
same request only swap the old score for the new one in the experienced
cyclist's rating.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from cyclebuddy.config import VALID_REVIEW_SCORES
from cyclebuddy.errors import InvalidTransitionError, NotFoundError, ValidationError
from cyclebuddy.models import BuddyRequest, BuddyRequestStatus, User

logger = logging.getLogger(__name__)

_REVIEWABLE = (BuddyRequestStatus.ACCEPTED, BuddyRequestStatus.COMPLETED)


@dataclass
class ReviewOutcome:
    """Both riders and the request after a review."""
    owner: User
    experienced_user: User
    buddy_request: BuddyRequest


def compute_rating(rating_sum: int, users_helped: int) -> float:
    if users_helped == 0:
        return 0.0
    return rating_sum / users_helped


def validate_score(score) -> int:
    if isinstance(score, bool) or not isinstance(score, int) or score not in VALID_REVIEW_SCORES:
        raise ValidationError("BuddyRequest review must be +/- 1")
    return score


def review(
    user_id: int,
    request: BuddyRequest,
    owner: User,
    experienced_user: User,
    score: int,
    now: Optional[datetime.datetime] = None,
) -> ReviewOutcome:
    """Review a BuddyRequest as its owner.

    Only the requester can review.  Anyone else, the experienced cyclist
    included, gets NotFoundError because the request is not in their sent
    set.  None of the inputs are modified.
    """
    if user_id != request.owner:
        raise NotFoundError("BuddyRequest doesn't exist")
    score = validate_score(score)
    if request.status not in _REVIEWABLE:
        raise InvalidTransitionError(f"Can't review a {request.status.value} BuddyRequest")
    if owner.id != request.owner or experienced_user.id != request.experienced_user:
        raise ValidationError("Users given do not match the BuddyRequest")

    first_review = request.status != BuddyRequestStatus.COMPLETED

    owner_changes = {}
    if first_review:
        owner_changes["distance_travelled"] = owner.distance_travelled + request.length
        owner_changes["helped_count"] = owner.helped_count + 1

    rating_sum = experienced_user.rating_sum + score - request.review
    users_helped = experienced_user.users_helped
    exp_changes = {"rating_sum": rating_sum}
    if first_review:
        exp_changes["distance_travelled"] = experienced_user.distance_travelled + request.length
        users_helped += 1
        exp_changes["users_helped"] = users_helped
    exp_changes["rating"] = compute_rating(rating_sum, users_helped)

    updated_request = dataclasses.replace(
        request,
        review=score,
        status=BuddyRequestStatus.COMPLETED,
        updated=now or datetime.datetime.now(datetime.timezone.utc),
    )
    logger.info(
        "BuddyRequest %s reviewed %+d (%s review)",
        request.id, score, "first" if first_review else "updated",
    )
    return ReviewOutcome(
        owner=dataclasses.replace(owner, **owner_changes),
        experienced_user=dataclasses.replace(experienced_user, **exp_changes),
        buddy_request=updated_request,
    )
