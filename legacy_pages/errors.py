"""
Error taxonomy shared by the service layer and the HTTP surface.

Every error carries the HTTP status and the human-readable message that is
returned to the client as ``{"message": ...}``.
"""

from __future__ import annotations


class PageError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationRequired(PageError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(PageError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(PageError):
    status_code = 404
    default_message = "Not found"


class Conflict(PageError):
    status_code = 400
    default_message = "Conflict"


class InvalidSubmission(PageError):
    status_code = 400
    default_message = "Invalid submission"


class UpstreamFailure(PageError):
    """Database or storage failure surfaced without its detail."""

    status_code = 500


SLUG_TAKEN = "This page URL is already taken"
