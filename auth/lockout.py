"""
auth/lockout.py -- Brute-force lockout as a pure state machine.

States:
  Unlocked: attempts < MAX_LOGIN_ATTEMPTS, lock_until is None
  Locked:   lock_until is set and now <= lock_until

There is no terminal state: an expired lock drops back to Unlocked on the next
failure, and a successful login resets everything.

Every function takes the current state (and the clock reading) explicitly and
returns a new LockoutState. Nothing here touches storage; AuthService writes
the result with an optimistic-concurrency update so two concurrent failures
cannot under-count.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

MAX_LOGIN_ATTEMPTS = 5
LOCK_DURATION = timedelta(minutes=30)


@dataclass(frozen=True)
class LockoutState:
    attempts: int = 0
    lock_until: datetime | None = None

    def to_fields(self) -> dict:
        """Field-update command for UserStore.compare_and_set()."""
        return {"login_attempts": self.attempts, "lock_until": self.lock_until}


@dataclass(frozen=True)
class Admission:
    admitted: bool
    minutes_remaining: int = 0


def _lock_active(state: LockoutState, now: datetime) -> bool:
    return state.lock_until is not None and now <= state.lock_until


def check_admission(state: LockoutState, now: datetime) -> Admission:
    """Reject while a lock is open; never mutates the attempt counter."""
    if _lock_active(state, now):
        remaining = (state.lock_until - now).total_seconds() / 60
        return Admission(admitted=False, minutes_remaining=max(1, math.ceil(remaining)))
    return Admission(admitted=True)


def record_failure(state: LockoutState, now: datetime) -> LockoutState:
    """Apply one failed password check.

    An expired lock is cleared and the failing attempt seeds the new counter.
    A failure while the lock is still open leaves the state untouched.
    """
    if state.lock_until is not None and now > state.lock_until:
        return LockoutState(attempts=1, lock_until=None)
    if _lock_active(state, now):
        return state
    attempts = state.attempts + 1
    if attempts >= MAX_LOGIN_ATTEMPTS:
        return LockoutState(attempts=attempts, lock_until=now + LOCK_DURATION)
    return LockoutState(attempts=attempts, lock_until=None)


def record_success(state: LockoutState) -> LockoutState:
    """Reset after a successful login. The caller stamps last_login_at."""
    return LockoutState()


def attempts_remaining(state: LockoutState) -> int:
    return max(0, MAX_LOGIN_ATTEMPTS - state.attempts)
