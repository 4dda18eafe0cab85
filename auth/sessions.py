"""
auth/sessions.py -- Refresh-token sessions: registration, rotation, revocation.

Each user carries an ordered list of live refresh-token handles (SessionEntry),
one per device or browser, capped at Settings.max_sessions_per_user. Only the
SHA-256 of each refresh token is stored.

Rotation protocol:
  1. The presented refresh token must verify (signature, issuer, audience,
     expiry, type) before anything else happens.
  2. Its hash is looked up in the user's session list inside an atomic update.
  3. Found: that entry is removed and a brand-new refresh token is registered
     in the same write. The presented token can never be used again.
  4. Not found: the token verified but is not live, so it was already rotated
     away (or revoked). That is treated as theft: every session of the user is
     cleared, and only then is SessionInvalid raised. The legitimate client
     and the attacker both have to log in again.

Because step 2-3 is a compare-and-set on the user's version, two concurrent
rotations of the same token cannot both succeed: the loser re-reads, no longer
finds the hash, and takes the reuse branch.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from auth.errors import SessionInvalid, Unauthorized
from auth.models import SessionEntry, User
from auth.store import update_user_atomically
from auth.tokens import TokenCodec, TokenPair, hash_token

logger = logging.getLogger("teamharbour.auth")

DEFAULT_MAX_SESSIONS = 5


def prune_expired(entries: list[SessionEntry], now: datetime) -> list[SessionEntry]:
    return [e for e in entries if e.expires_at > now]


def append_capped(entries: list[SessionEntry], entry: SessionEntry, cap: int) -> list[SessionEntry]:
    """Append and keep the newest `cap` entries (oldest evicted first)."""
    return (entries + [entry])[-cap:]


class SessionRegistry:
    """Per-user bounded set of live refresh-token handles."""

    def __init__(
        self,
        store,
        codec: TokenCodec,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._codec = codec
        self._max_sessions = max_sessions
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _entry_for(self, raw_token: str, now: datetime) -> SessionEntry:
        return SessionEntry(
            token_hash=hash_token(raw_token),
            created_at=now,
            expires_at=now + self._codec.refresh_ttl,
        )

    def active_sessions(self, user: User, now: datetime | None = None) -> list[SessionEntry]:
        return prune_expired(user.sessions, now or self._clock())

    def register(self, user_id: int, raw_refresh_token: str) -> User:
        """Record a newly issued refresh token as a live session."""
        now = self._clock()
        entry = self._entry_for(raw_refresh_token, now)

        def mutate(user: User) -> dict:
            return {"sessions": append_capped(prune_expired(user.sessions, now), entry, self._max_sessions)}

        return update_user_atomically(self._store, user_id, mutate)

    def rotate(self, user: User, incoming_raw_token: str) -> TokenPair:
        """Exchange a live refresh token for a new access + refresh pair.

        Raises Unauthorized (TokenExpired / TokenInvalid) when the token does
        not verify or belongs to someone else, and SessionInvalid after
        revoking every session when the token is not live.
        """
        claims = self._codec.verify_refresh(incoming_raw_token)
        if claims.user_id != user.id:
            raise Unauthorized("Invalid or expired refresh token.")

        incoming_hash = hash_token(incoming_raw_token)
        new_refresh = self._codec.issue_refresh(user.id)
        now = self._clock()
        new_entry = self._entry_for(new_refresh, now)
        # Rewritten on every attempt of the retry loop; only the last one counts.
        outcome = {"reused": False}

        def mutate(current: User) -> dict | None:
            if not any(s.token_hash == incoming_hash for s in current.sessions):
                outcome["reused"] = True
                return {"sessions": []} if current.sessions else None
            outcome["reused"] = False
            remaining = [s for s in prune_expired(current.sessions, now) if s.token_hash != incoming_hash]
            return {"sessions": append_capped(remaining, new_entry, self._max_sessions)}

        updated = update_user_atomically(self._store, user.id, mutate)
        if outcome["reused"]:
            logger.warning("Refresh token reuse detected for user %s. All sessions revoked.", user.id)
            raise SessionInvalid()

        access = self._codec.issue_access(updated.id, updated.role, updated.email)
        return TokenPair(access_token=access, refresh_token=new_refresh)

    def revoke_one(self, user_id: int, raw_token: str) -> bool:
        """Remove one session (logout on one device). Returns False if absent."""
        token_hash = hash_token(raw_token)
        removed = {"hit": False}

        def mutate(user: User) -> dict | None:
            kept = [s for s in user.sessions if s.token_hash != token_hash]
            removed["hit"] = len(kept) != len(user.sessions)
            return {"sessions": kept} if removed["hit"] else None

        update_user_atomically(self._store, user_id, mutate)
        return removed["hit"]

    def revoke_all(self, user_id: int) -> int:
        """Clear every session of the user. Returns how many were removed."""
        count = {"n": 0}

        def mutate(user: User) -> dict | None:
            count["n"] = len(user.sessions)
            return {"sessions": []} if user.sessions else None

        update_user_atomically(self._store, user_id, mutate)
        return count["n"]
