"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container). Dataclasses own the domain shape;
the store, the lockout policy, the session registry and the service do the
work. The few derived values (full_name, is_locked, public_profile) are plain
functions computed on read and never stored.

All timestamps are timezone-aware UTC datetimes. The store converts them to
ISO 8601 strings at the persistence boundary.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of organizational roles."""

    admin = "admin"
    hr_manager = "hr_manager"
    finance_officer = "finance_officer"
    department_head = "department_head"
    employee = "employee"
    auditor = "auditor"


@dataclass
class SessionEntry:
    """One live refresh-token handle (one device or browser).

    token_hash is SHA-256 of the raw refresh token. The raw token is returned
    to the client once and never persisted.
    """

    token_hash: str
    created_at: datetime
    expires_at: datetime


@dataclass
class User:
    """A person who can authenticate against TeamHarbour.

    password_hash is None for invited users until they redeem their invite.
    invite_token_hash / invite_token_expires_at are set together while an
    invite is outstanding and cleared together on redemption.

    sessions is ordered oldest-first and capped at Settings.max_sessions_per_user.

    version is the optimistic-concurrency token: every write bumps it, and
    writes are conditional on the version the writer read.

    bootstrap_admin is True only for the admin created through the bootstrap
    secret. The store keeps it unique so at most one such admin can exist.
    """

    first_name: str
    last_name: str
    email: str  # lowercase, trimmed
    role: str = Role.employee.value
    id: int | None = None
    password_hash: str | None = None
    is_active: bool = True
    has_set_password: bool = False
    invite_token_hash: str | None = None
    invite_token_expires_at: datetime | None = None
    sessions: list[SessionEntry] = field(default_factory=list)
    login_attempts: int = 0
    lock_until: datetime | None = None
    password_changed_at: datetime | None = None
    last_login_at: datetime | None = None
    created_by: int | None = None  # admin id, weak reference
    created_at: datetime | None = None
    bootstrap_admin: bool = False
    version: int = 0


def normalize_email(email: str) -> str:
    return email.strip().lower()


def full_name(user: User) -> str:
    return f"{user.first_name} {user.last_name}"


def is_locked(user: User, now: datetime) -> bool:
    """True while a lockout window is still open at `now`."""
    return user.lock_until is not None and user.lock_until >= now


def public_profile(user: User) -> dict:
    """Outward-facing projection of a user.

    Never includes the password hash, invite fields, or session handles.
    """
    return {
        "id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email": user.email,
        "role": user.role,
    }
