"""Error taxonomy for the matching and buddy request engine.

Every error carries an ``http_status`` hint so a transport layer can map it
onto a response without inspecting the message.  None of these are retried
by the engine: they are deterministic functions of (stored state, request),
except :class:`ConflictError`, which the caller may retry as a whole.
"""

from __future__ import annotations


class CycleBuddyError(Exception):
    """Base class for all engine errors."""

    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(CycleBuddyError, ValueError):
    """Bad input: fix the request and try again."""

    http_status = 400


class AuthorizationError(CycleBuddyError):
    """The caller is a participant but not allowed to perform this action."""

    http_status = 403


class NotFoundError(CycleBuddyError):
    """Unknown id, or an object outside the caller's visible set."""

    http_status = 404


class InvalidTransitionError(CycleBuddyError):
    """A BuddyRequest status change that the lifecycle rules forbid."""

    http_status = 400


class ConflictError(CycleBuddyError):
    """The stored object changed underneath us (or the store stayed locked)."""

    http_status = 409
