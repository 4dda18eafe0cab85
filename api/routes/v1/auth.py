"""
api/routes/v1/auth.py -- Authentication and onboarding REST endpoints.

Routes:
  POST  /api/v1/auth/register-admin       -- bootstrap the first admin (secret required)
  POST  /api/v1/auth/login                -- password login; access token in body, refresh cookie set
  POST  /api/v1/auth/set-password         -- redeem an invite token
  POST  /api/v1/auth/refresh-token        -- rotate the refresh token; new access token in body
  POST  /api/v1/auth/logout               -- revoke the current refresh token (requires auth)
  GET   /api/v1/auth/me                   -- current user profile (requires auth)
  POST  /api/v1/auth/change-password      -- change password, revoke every session (requires auth)
  GET   /api/v1/auth/users                -- list every account (admin only)
  POST  /api/v1/auth/users                -- create a user and an invite (admin only)
  POST  /api/v1/auth/users/{id}/invite    -- reissue an invite (admin only)
  PATCH /api/v1/auth/users/{id}           -- activate / deactivate (admin only)

Security:
  register-admin, login and set-password are rate-limited per IP. The
  @limiter.limit decorator sits under @router.post so the router registers
  the wrapped endpoint; SlowAPIMiddleware skips routes that carry their own
  decorator.
  Handlers are plain `def`: FastAPI runs them in its worker thread pool, so
  bcrypt work never blocks the event loop.
  The refresh token is only ever sent as an httpOnly, SameSite=strict cookie
  scoped to /api/v1/auth; `secure` follows Settings.secure_cookies.
  Cache-Control: no-store on every response that carries a token.
  Failures raised by AuthService are mapped to status codes by the AuthError
  handler in api/main.py -- handlers never translate errors by hand.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AdminRegisterRequest,
    ChangePasswordRequest,
    InviteResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    SetPasswordRequest,
    TokenResponse,
    UserCreate,
    UserPatch,
    UserProfile,
    UserStatusResponse,
    UserSummary,
)
from auth.dependencies import get_current_user, require_admin
from auth.service import AuthService, CreatedUser
from auth.tokens import AccessClaims
from core.config import get_settings

REFRESH_COOKIE = "refresh_token"
_COOKIE_PATH = "/api/v1/auth"

router = APIRouter()


def _auth_limit() -> str:
    return get_settings().auth_rate_limit


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(request: Request, response: Response, token: str) -> None:
    """Write the refresh token as an httpOnly cookie.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the refresh token expiry so both expire together.
    """
    response.set_cookie(
        REFRESH_COOKIE,
        value=token,
        httponly=True,
        samesite="strict",
        secure=request.app.state.settings.secure_cookies,
        max_age=_service(request).codec.refresh_expires_in,
        path=_COOKIE_PATH,
    )


def clear_refresh_cookie(request: Request, response: Response) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path=_COOKIE_PATH,
        httponly=True,
        samesite="strict",
        secure=request.app.state.settings.secure_cookies,
    )


def _incoming_refresh_token(request: Request, body: RefreshRequest | None) -> str | None:
    return request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)


def _invite_response(created: CreatedUser) -> InviteResponse:
    return InviteResponse(
        user=UserProfile(**created.user),
        invite_token=created.invite_token,
        invite_link=created.invite_link,
        expires_at=created.expires_at,
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register-admin", response_model=UserProfile, status_code=201)
@limiter.limit(_auth_limit)
def register_admin(request: Request, body: AdminRegisterRequest) -> UserProfile:
    """Create the first admin account. Returns 409 once an admin exists."""
    profile = _service(request).register_admin(
        body.bootstrap_secret,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        password=body.password,
    )
    return UserProfile(**profile)


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_auth_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    The access token is returned in the body; the refresh token is set as a
    cookie only. Wrong email and wrong password produce the same 401.
    """
    service = _service(request)
    result = service.login(body.email, body.password)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=result.access_token,
            expires_in=service.codec.access_expires_in,
            user=UserProfile(**result.user),
        ).model_dump(),
    )
    set_refresh_cookie(request, resp, result.refresh_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/set-password", response_model=UserProfile)
@limiter.limit(_auth_limit)
def set_password(request: Request, body: SetPasswordRequest) -> UserProfile:
    """Redeem an invite token and set the first password."""
    return UserProfile(**_service(request).set_password(body.invite_token, body.password))


@router.post("/auth/refresh-token", response_model=TokenResponse)
def refresh_token(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Exchange the refresh token for a new access token and a rotated refresh cookie.

    Presenting a refresh token that was already rotated away revokes every
    session of that user (reuse detection) and returns 401.
    """
    service = _service(request)
    pair = service.refresh_access_token(_incoming_refresh_token(request, body))
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=pair.access_token,
            expires_in=service.codec.access_expires_in,
        ).model_dump(),
    )
    set_refresh_cookie(request, resp, pair.refresh_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: RefreshRequest | None = None,
    current_user: AccessClaims = Depends(get_current_user),
) -> JSONResponse:
    """Revoke the session behind the presented refresh token and clear the cookie."""
    _service(request).logout(current_user.user_id, _incoming_refresh_token(request, body))
    resp = JSONResponse(content=MessageResponse(message="Logged out successfully.").model_dump())
    clear_refresh_cookie(request, resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, current_user: AccessClaims = Depends(get_current_user)) -> MeResponse:
    """Return the profile of the currently authenticated user."""
    return MeResponse(**_service(request).get_me(current_user.user_id))


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: AccessClaims = Depends(get_current_user),
) -> JSONResponse:
    """Change the password. Every session is revoked; the client must log in again."""
    _service(request).change_password(current_user.user_id, body.current_password, body.new_password)
    resp = JSONResponse(
        content=MessageResponse(message="Password changed successfully. Please log in again.").model_dump()
    )
    clear_refresh_cookie(request, resp)
    return resp


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserSummary])
def list_users(
    request: Request,
    current_user: AccessClaims = Depends(require_admin),
) -> list[UserSummary]:
    """List every account with its activation and onboarding status."""
    return [UserSummary(**u) for u in _service(request).list_users()]


@router.post("/auth/users", response_model=InviteResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: AccessClaims = Depends(require_admin),
) -> InviteResponse:
    """Create a pending user. The invite token must be delivered out of band."""
    created = _service(request).create_user(
        current_user.user_id,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        role=body.role.value,
    )
    return _invite_response(created)


@router.post("/auth/users/{user_id}/invite", response_model=InviteResponse)
def reissue_invite(
    request: Request,
    user_id: int,
    current_user: AccessClaims = Depends(require_admin),
) -> InviteResponse:
    """Replace the invite of a user who has not set a password yet."""
    return _invite_response(_service(request).reissue_invite(current_user.user_id, user_id))


@router.patch("/auth/users/{user_id}", response_model=UserStatusResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: AccessClaims = Depends(require_admin),
) -> UserStatusResponse:
    """Activate or deactivate an account. Deactivation revokes every session."""
    return UserStatusResponse(**_service(request).set_active(current_user.user_id, user_id, body.is_active))
