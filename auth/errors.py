"""
auth/errors.py -- Typed failures raised by the auth core.

Every failure the core can produce is one of the AuthError subclasses below.
Each carries an ErrorKind (stable machine-readable code) and the HTTP status
the transport layer should use. api/main.py maps them with a single exception
handler, so route handlers never translate errors by hand.

Unexpected exceptions (database driver errors, crypto library errors) never
leave AuthService as-is: they are logged and re-raised as InternalError, whose
message is intentionally generic.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    validation_failed = "validation_failed"
    unauthorized = "unauthorized"
    token_expired = "token_expired"
    token_invalid = "token_invalid"
    forbidden = "forbidden"
    conflict = "conflict"
    locked = "locked"
    not_found = "not_found"
    session_invalid = "session_invalid"
    invite_invalid_or_expired = "invite_invalid_or_expired"
    internal_error = "internal_error"


STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.validation_failed: 422,
    ErrorKind.unauthorized: 401,
    ErrorKind.token_expired: 401,
    ErrorKind.token_invalid: 401,
    ErrorKind.forbidden: 403,
    ErrorKind.conflict: 409,
    ErrorKind.locked: 423,
    ErrorKind.not_found: 404,
    ErrorKind.session_invalid: 401,
    ErrorKind.invite_invalid_or_expired: 400,
    ErrorKind.internal_error: 500,
}


class AuthError(Exception):
    """Base class for every failure the auth core reports to its callers."""

    kind: ErrorKind = ErrorKind.internal_error
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, detail: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ValidationFailed(AuthError):
    kind = ErrorKind.validation_failed
    default_message = "Validation failed."


class Unauthorized(AuthError):
    kind = ErrorKind.unauthorized
    default_message = "Not authenticated."


class TokenExpired(Unauthorized):
    kind = ErrorKind.token_expired
    default_message = "Token has expired."


class TokenInvalid(Unauthorized):
    kind = ErrorKind.token_invalid
    default_message = "Invalid token."


class Forbidden(AuthError):
    kind = ErrorKind.forbidden
    default_message = "Access denied."


class Conflict(AuthError):
    kind = ErrorKind.conflict
    default_message = "Conflict."


class Locked(AuthError):
    """Raised while a lockout window is open. minutes_remaining is rounded up."""

    kind = ErrorKind.locked

    def __init__(self, minutes_remaining: int) -> None:
        self.minutes_remaining = minutes_remaining
        super().__init__(
            "Account temporarily locked due to too many failed login attempts. "
            f"Try again in {minutes_remaining} minute(s).",
            detail={"minutes_remaining": minutes_remaining},
        )


class NotFound(AuthError):
    kind = ErrorKind.not_found
    default_message = "User not found."


class SessionInvalid(AuthError):
    kind = ErrorKind.session_invalid
    default_message = "Session invalid. Please log in again."


class InviteInvalidOrExpired(AuthError):
    kind = ErrorKind.invite_invalid_or_expired
    default_message = "Invalid or expired invite token. Please request a new invite from your administrator."


class InternalError(AuthError):
    kind = ErrorKind.internal_error
