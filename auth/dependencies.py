"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Protected routes expect the access token in an Authorization: Bearer header.
Verification is stateless (signature, issuer, audience, expiry) and yields the
AccessClaims carried by the token; routes that need the full record load it
through AuthService.

get_current_user() raises HTTP 401, distinguishing expired from invalid tokens
so clients know when to call /auth/refresh-token.
require_roles() builds a dependency that additionally raises HTTP 403 when the
caller's role is not in the allowed set. require_admin is the common case.

Layer rule: auth/dependencies.py may import from fastapi (for
HTTPException/Request) because this module is part of the FastAPI dependency
injection system. It does not import from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import TokenExpired, Unauthorized
from auth.models import Role
from auth.tokens import AccessClaims


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_user(request: Request) -> AccessClaims:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: AccessClaims = Depends(get_current_user)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={
                "code": "unauthorized",
                "message": "Access token is missing or malformed. Expected: Authorization: Bearer <token>",
            },
        )
    try:
        return request.app.state.auth_service.codec.verify_access(token)
    except TokenExpired:
        raise HTTPException(
            status_code=401,
            detail={"code": "token_expired", "message": "Access token has expired. Please refresh your token."},
        )
    except Unauthorized:
        raise HTTPException(
            status_code=401,
            detail={"code": "token_invalid", "message": "Invalid access token."},
        )


def require_roles(*roles: str):
    """Build a dependency that admits only the given roles.

    Use as a FastAPI dependency:
        @router.post("/reports")
        def route(user: AccessClaims = Depends(require_roles("admin", "auditor"))): ...
    """
    allowed = {Role(r).value for r in roles}

    def dependency(request: Request) -> AccessClaims:
        user = get_current_user(request)
        if user.role not in allowed:
            raise HTTPException(
                status_code=403,
                detail={
                    "code": "forbidden",
                    "message": f"Access denied. Required role(s): {', '.join(sorted(allowed))}.",
                },
            )
        return user

    return dependency


require_admin = require_roles(Role.admin.value)
