"""
Error taxonomy shared by every layer.

The API maps each class to an HTTP status; the websocket gateway forwards
``str(error)`` verbatim to the requesting session.
"""

from __future__ import annotations

from typing import Iterable, Optional

from .enums import RideStatus


class DispatchError(Exception):
    """Base class for expected, caller-visible failures."""

    code = "dispatch_error"


class ValidationError(DispatchError):
    """Malformed input: bad coordinates, unknown service class, ..."""

    code = "validation_error"


class ConflictError(DispatchError):
    """A compare-and-swap precondition on ride status did not hold."""

    code = "conflict"

    def __init__(
        self,
        message: str,
        current_status: Optional[RideStatus] = None,
        expected: Iterable[RideStatus] = (),
    ):
        super().__init__(message)
        self.current_status = current_status
        self.expected = frozenset(expected)


class NotFoundError(DispatchError):
    code = "not_found"


class ForbiddenError(DispatchError):
    """The authenticated identity may not act on this resource."""

    code = "forbidden"


class UnavailableError(DispatchError):
    """Geo-Index, store or channel temporarily unreachable."""

    code = "unavailable"


class ExpiredError(DispatchError):
    """The matching round deadline passed before the action arrived."""

    code = "expired"
