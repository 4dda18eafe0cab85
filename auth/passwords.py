"""
auth/passwords.py -- bcrypt password hashing and verification.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error. Direct bcrypt usage is simpler and has no
compatibility shim.

bcrypt embeds a fresh random salt in every digest, so hashing the same
password twice yields two different strings. checkpw() compares in constant
time.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import bcrypt

DEFAULT_ROUNDS = 12

# bcrypt only looks at the first 72 bytes. The API layer caps passwords at
# 128 characters; anything past 72 bytes is truncated here explicitly so
# bcrypt 4.x does not raise on long multi-byte input.
_BCRYPT_MAX_BYTES = 72


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str, rounds: int = DEFAULT_ROUNDS) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_encode(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Malformed or missing digests return False instead of raising.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def needs_rehash(hashed: str, rounds: int = DEFAULT_ROUNDS) -> bool:
    """True if the stored work factor is lower than `rounds`.

    bcrypt hash format: $2b$<cost>$<salt+digest>.
    """
    try:
        return int(hashed.split("$")[2]) < rounds
    except (IndexError, ValueError, AttributeError):
        return True


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Login calls verify_dummy() when the email does
# not exist, so response time does not reveal whether an account exists.
_DUMMY_HASH: str = hash_password("teamharbour_timing_dummy")


def verify_dummy(plain: str) -> None:
    verify_password(plain, _DUMMY_HASH)
