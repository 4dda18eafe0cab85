"""
API request and response models for TeamHarbour Auth REST endpoints.

Pydantic v2 models for the JSON bodies the API accepts and returns. The
dataclasses in auth/models.py stay the domain representation; route handlers
build these from the plain dicts AuthService returns.

All field-level validation (name length, email shape, password complexity,
confirmation match) happens here, before AuthService is called. A failure
becomes a 422 with the standard error envelope (see api/main.py).
"""

import re
from datetime import datetime
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from auth.models import Role

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^\S+@\S+\.\S+$"

# At least one lowercase, one uppercase, one digit and one of @$!%*?&.
_PASSWORD_RULES = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])")


def _check_password(value: str) -> str:
    if not _PASSWORD_RULES.match(value):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "one number, and one special character (@$!%*?&)"
        )
    return value


def _check_invitable_role(value: Role) -> Role:
    if value is Role.admin:
        raise ValueError("Invited users cannot be given the admin role")
    return value


_Name = Annotated[str, Field(min_length=2, max_length=50)]
_Email = Annotated[str, Field(pattern=EMAIL_PATTERN, max_length=255), AfterValidator(str.lower)]
_Password = Annotated[str, Field(min_length=8, max_length=128), AfterValidator(_check_password)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class AdminRegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register-admin."""

    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: _Name
    last_name: _Name
    email: _Email
    password: _Password
    bootstrap_secret: str = Field(min_length=1)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    The password is deliberately not complexity-checked here: a login attempt
    with a weak password must still count as a failed attempt.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email
    password: str = Field(min_length=1, max_length=128)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users (admin invites a new user)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: _Name
    last_name: _Name
    email: _Email
    role: Annotated[Role, AfterValidator(_check_invitable_role)] = Role.employee


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}."""

    is_active: bool


class SetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/set-password."""

    invite_token: str = Field(min_length=1, max_length=128)
    password: _Password
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self) -> "SetPasswordRequest":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: str = Field(min_length=1, max_length=128)
    new_password: _Password
    confirm_new_password: str

    @model_validator(mode="after")
    def passwords_match(self) -> "ChangePasswordRequest":
        if self.new_password != self.confirm_new_password:
            raise ValueError("Passwords do not match")
        return self


class RefreshRequest(BaseModel):
    """Optional body for POST /auth/refresh-token and /auth/logout.

    Browsers send the refresh token as a cookie; non-browser clients may put
    it in the body instead. The cookie wins when both are present.
    """

    refresh_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserProfile(BaseModel):
    """Public projection of a user -- never includes credentials or tokens."""

    model_config = ConfigDict(frozen=True)

    id: int
    first_name: str
    last_name: str
    email: str
    role: str


class UserStatusResponse(UserProfile):
    is_active: bool


class UserSummary(UserStatusResponse):
    has_set_password: bool
    is_locked: bool = False


class MeResponse(UserProfile):
    full_name: str
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    active_sessions: int = 0


class LoginResponse(BaseModel):
    """Response for POST /login. The refresh token travels as a cookie only."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserProfile


class TokenResponse(BaseModel):
    """Response for POST /refresh-token."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class InviteResponse(BaseModel):
    """Response for user creation and invite reissue.

    invite_token / invite_link are returned so the caller can deliver them out
    of band. They are shown once and never stored in raw form.
    """

    model_config = ConfigDict(frozen=True)

    user: UserProfile
    invite_token: str
    invite_link: str
    expires_at: datetime


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str | dict] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
