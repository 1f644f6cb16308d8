"""
core/errors.py -- Error taxonomy for the identity subsystem.

Services raise these; only api/main.py turns them into HTTP responses. Each
class carries the status code and stable error code used in the ErrorResponse
envelope, so route handlers never pick status codes for domain failures.

AdapterError surfaces as 401: the end user only learns that
provider login failed. The detail stays in the server log.
"""

from __future__ import annotations


class IdentityError(Exception):
    """Base class for identity-layer failures mapped to HTTP responses."""

    status_code: int = 500
    code: str = "internal_error"
    public_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class ValidationError(IdentityError):
    """Malformed or missing required fields (400)."""

    status_code = 400
    code = "validation_error"
    public_message = "Request validation failed."


class Unauthorized(IdentityError):
    """Bad credentials, unknown/expired refresh token, or invalid signature (401)."""

    status_code = 401
    code = "unauthorized"
    public_message = "Authentication required."


class Forbidden(IdentityError):
    """Authenticated but lacking the required role (403)."""

    status_code = 403
    code = "forbidden"
    public_message = "Insufficient permissions."


class NotFound(IdentityError):
    """Operation on a nonexistent user (404)."""

    status_code = 404
    code = "not_found"
    public_message = "Resource not found."


class Conflict(IdentityError):
    """Duplicate email at registration (409)."""

    status_code = 409
    code = "conflict"
    public_message = "Resource already exists."


class AdapterError(IdentityError):
    """Identity provider call failed, timed out, or returned an unusable response.

    The message is for logs. Clients see the generic 401 body.
    """

    status_code = 401
    code = "unauthorized"
    public_message = "Provider authentication failed."

    def __init__(self, message: str | None = None, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider
