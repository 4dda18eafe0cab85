"""
auth/tokens.py -- JWT access/refresh tokens and opaque token helpers.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       different secrets, so neither can be replayed as the other. Both carry
       the same issuer and audience, and a "typ" claim that is checked on
       verification as a second guard.

  Access tokens are short-lived (15 minutes by default) and carry
       sub (user id), role and email -- everything the HTTP layer needs to
       authorize a request without a database round-trip.

  Refresh tokens are long-lived (7 days by default) and carry only sub plus a
       random jti. The jti makes every refresh token unique even when two are
       minted for the same user within the same second; rotation depends on
       that uniqueness.

  Verification raises TokenExpired or TokenInvalid (both Unauthorized) so the
       caller can tell an expired token from a forged one.

  Opaque tokens (invites) and refresh-session handles are stored as SHA-256
       hex digests. Both inputs carry 256 bits of entropy, so a fast
       deterministic hash is enough and allows O(1) lookup; bcrypt's deliberate
       slowness is only needed for low-entropy passwords.

Layer rule: no imports from api/. Settings are passed in, never read at
import time.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid

if TYPE_CHECKING:
    from core.config import Settings

_ALGORITHM = "HS256"

_ACCESS = "access"
_REFRESH = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    role: str
    email: str
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    user_id: int
    token_id: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """Return 32 random bytes as 64 hex characters (256 bits of entropy)."""
    return secrets.token_hex(32)


def hash_token(raw: str) -> str:
    """Deterministic one-way digest used to store tokens at rest."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# JWT codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Signs and verifies access and refresh JWTs.

    Usage:
        codec = TokenCodec(get_settings())
        access = codec.issue_access(user.id, user.role, user.email)
        claims = codec.verify_access(access)
    """

    def __init__(self, settings: Settings) -> None:
        self._access_secret = settings.access_token_secret
        self._refresh_secret = settings.refresh_token_secret
        self._issuer = settings.token_issuer
        self._audience = settings.token_audience
        self.access_ttl = timedelta(minutes=settings.access_token_expire_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_expire_days)

    @property
    def access_expires_in(self) -> int:
        return int(self.access_ttl.total_seconds())

    @property
    def refresh_expires_in(self) -> int:
        return int(self.refresh_ttl.total_seconds())

    def issue_access(self, user_id: int, role: str, email: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "role": role,
            "email": email,
            "typ": _ACCESS,
            "iss": self._issuer,
            "aud": self._audience,
            "iat": now,
            "exp": now + self.access_ttl,
        }
        return jwt.encode(payload, self._access_secret, algorithm=_ALGORITHM)

    def issue_refresh(self, user_id: int) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "typ": _REFRESH,
            "jti": secrets.token_hex(16),
            "iss": self._issuer,
            "aud": self._audience,
            "iat": now,
            "exp": now + self.refresh_ttl,
        }
        return jwt.encode(payload, self._refresh_secret, algorithm=_ALGORITHM)

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode(token, self._access_secret, _ACCESS)
        try:
            return AccessClaims(
                user_id=int(payload["sub"]),
                role=payload["role"],
                email=payload["email"],
                expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid("Invalid access token.") from exc

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(token, self._refresh_secret, _REFRESH)
        try:
            return RefreshClaims(
                user_id=int(payload["sub"]),
                token_id=payload["jti"],
                expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid("Invalid refresh token.") from exc

    def _decode(self, token: str, secret: str, expected_type: str) -> dict:
        """Verify signature, issuer, audience and expiry, then the token type."""
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired(f"{expected_type.capitalize()} token has expired.") from exc
        except (JWTError, AttributeError) as exc:
            raise TokenInvalid(f"Invalid {expected_type} token.") from exc
        if payload.get("typ") != expected_type:
            raise TokenInvalid(f"Invalid {expected_type} token.")
        return payload
