"""Error taxonomy shared by the EventPass services and API."""

from __future__ import annotations


class EventPassError(Exception):
    """Base error carrying an HTTP-ish status and a stable error kind."""

    status_code = 500
    error = "InternalError"
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    def as_dict(self) -> dict[str, str]:
        return {"error": self.error, "detail": self.message}


class NotFoundError(EventPassError):
    """Referenced event, membership or user is missing or soft-deleted."""

    status_code = 404
    error = "NotFound"
    default_message = "Not found"


class ForbiddenError(EventPassError):
    """Visibility or ownership check failed."""

    status_code = 403
    error = "Forbidden"
    default_message = "Forbidden"


class LoginRequiredError(ForbiddenError):
    status_code = 401
    error = "LoginRequired"
    default_message = "Login required"


class ConflictError(EventPassError):
    status_code = 409
    error = "Conflict"
    default_message = "A record with this value already exists"


class ValidationError(EventPassError):
    status_code = 400
    error = "ValidationError"
    default_message = "Invalid input"


class ShortCodeAllocationError(EventPassError):
    """Raised when the short-code retry budget is exhausted."""

    error = "ShortCodeAllocationFailed"
    default_message = "Could not allocate a unique short code"
