"""
auth/invites.py -- One-time onboarding tokens.

An admin creates a user without a password; the user receives a random invite
token out of band (email delivery is the caller's job) and exchanges it for
their first password.

Only SHA-256(raw_token) and the expiry are stored on the user. Redemption
clears both, so a token works exactly once. A wrong token and an expired token
fail with the same InviteInvalidOrExpired error.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from auth.errors import InternalError, InviteInvalidOrExpired
from auth.models import User
from auth.passwords import DEFAULT_ROUNDS, hash_password
from auth.store import update_user_atomically
from auth.tokens import generate_opaque_token, hash_token

logger = logging.getLogger("teamharbour.auth")

DEFAULT_INVITE_TTL_HOURS = 48

_MAX_REDEEM_ATTEMPTS = 5


@dataclass(frozen=True)
class IssuedInvite:
    raw_token: str  # hand to the user once; never stored
    expires_at: datetime


class InviteTokenService:
    def __init__(
        self,
        store,
        ttl_hours: int = DEFAULT_INVITE_TTL_HOURS,
        bcrypt_rounds: int = DEFAULT_ROUNDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._ttl_hours = ttl_hours
        self._bcrypt_rounds = bcrypt_rounds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue(self, user_id: int, ttl_hours: int | None = None) -> IssuedInvite:
        """Generate an invite for `user_id`, replacing any outstanding one."""
        raw = generate_opaque_token()
        expires_at = self._clock() + timedelta(hours=ttl_hours or self._ttl_hours)
        fields = {"invite_token_hash": hash_token(raw), "invite_token_expires_at": expires_at}
        update_user_atomically(self._store, user_id, lambda user: fields)
        return IssuedInvite(raw_token=raw, expires_at=expires_at)

    def redeem(self, raw_token: str, new_password: str) -> User:
        """Set the first password using an invite token. Strictly one-time.

        If two redemptions race, the loser's compare-and-set fails, its re-read
        no longer finds the (now cleared) invite hash, and it fails exactly like
        a wrong token.
        """
        if not raw_token:
            raise InviteInvalidOrExpired()
        token_hash = hash_token(raw_token)
        password_hash = hash_password(new_password, self._bcrypt_rounds)

        for _ in range(_MAX_REDEEM_ATTEMPTS):
            now = self._clock()
            user = self._store.get_by_invite_hash(token_hash, now)
            if user is None:
                raise InviteInvalidOrExpired()
            changes = {
                "password_hash": password_hash,
                "has_set_password": True,
                "password_changed_at": now,
                "invite_token_hash": None,
                "invite_token_expires_at": None,
            }
            if self._store.compare_and_set(user.id, user.version, **changes):
                logger.info("Password set for user %s via invite", user.id)
                return dataclasses.replace(user, **changes, version=user.version + 1)
        raise InternalError()
