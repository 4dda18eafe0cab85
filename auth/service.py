"""
auth/service.py -- AuthService: registration, login, refresh, logout, password
management and invite onboarding.

AuthService is the only entry point the HTTP layer calls. It takes already
validated input and either returns a plain result or raises one of the typed
failures in auth/errors.py. Anything else that goes wrong underneath
(database driver, crypto library) is logged and re-raised as InternalError,
so no raw exception ever reaches the transport layer unclassified.

Collaborators are injected: the UserStore (or any object with the same
methods), the Settings, and a clock. Nothing here reads module-level state.

Security:
  Login never distinguishes "no such email" from "wrong password": both return
  the same Unauthorized message, and the unknown-email path still runs a bcrypt
  verification against a dummy hash so timing matches.

  The bootstrap secret is compared with hmac.compare_digest().

  bcrypt work is done before entering any optimistic-concurrency retry loop,
  so a lost race never re-hashes.
"""

from __future__ import annotations

import functools
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AuthError,
    Conflict,
    Forbidden,
    InternalError,
    Locked,
    NotFound,
    Unauthorized,
    ValidationFailed,
)
from auth.invites import InviteTokenService
from auth.lockout import LockoutState, attempts_remaining, check_admission, record_failure, record_success
from auth.models import Role, User, full_name, is_locked, normalize_email, public_profile
from auth.passwords import hash_password, needs_rehash, verify_dummy, verify_password
from auth.sessions import SessionRegistry
from auth.store import update_user_atomically
from auth.tokens import TokenCodec, TokenPair
from core.config import Settings

logger = logging.getLogger("teamharbour.auth")

_BAD_CREDENTIALS = "Invalid email or password."
_MAX_NAME_LENGTH = 50


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    refresh_token: str
    user: dict


@dataclass(frozen=True)
class CreatedUser:
    user: dict
    invite_token: str
    invite_link: str
    expires_at: datetime


def _classified(method):
    """Let AuthError through; log and wrap everything else as InternalError."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except AuthError:
            raise
        except Exception as exc:
            logger.exception("Unexpected failure in AuthService.%s", method.__name__)
            raise InternalError() from exc

    return wrapper


def _lockout_state(user: User) -> LockoutState:
    return LockoutState(attempts=user.login_attempts, lock_until=user.lock_until)


def _invitable_role(role: str) -> str:
    """Roles an admin may hand out. Admin accounts only come from bootstrap."""
    try:
        role = Role(role)
    except ValueError as exc:
        raise ValidationFailed(f"{role!r} is not a valid role.") from exc
    if role is Role.admin:
        raise ValidationFailed("Invited users cannot be given the admin role.")
    return role.value


def _check_names(first_name: str, last_name: str) -> tuple[str, str]:
    first, last = first_name.strip(), last_name.strip()
    for value in (first, last):
        if not value or len(value) > _MAX_NAME_LENGTH:
            raise ValidationFailed(f"Names must be between 1 and {_MAX_NAME_LENGTH} characters.")
    return first, last


class AuthService:
    """Orchestrates credentials, lockout, tokens, sessions and invites.

    Usage:
        service = AuthService(UserStore(settings.database_url), settings)
        service.register_admin(secret, first_name="Ada", last_name="King",
                               email="ada@x.com", password="Str0ng!pass")
        result = service.login("ada@x.com", "Str0ng!pass")
        pair = service.refresh_access_token(result.refresh_token)
    """

    def __init__(
        self,
        store,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
        codec: TokenCodec | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rounds = settings.bcrypt_rounds
        self.codec = codec or TokenCodec(settings)
        self.sessions = SessionRegistry(
            store,
            self.codec,
            max_sessions=settings.max_sessions_per_user,
            clock=self._clock,
        )
        self.invites = InviteTokenService(
            store,
            ttl_hours=settings.invite_token_expire_hours,
            bcrypt_rounds=settings.bcrypt_rounds,
            clock=self._clock,
        )

    # ------------------------------------------------------------------
    # Account creation
    # ------------------------------------------------------------------

    @_classified
    def register_admin(self, secret: str, *, first_name: str, last_name: str, email: str, password: str) -> dict:
        """Create the first admin. Guarded by the bootstrap secret; works once."""
        if not hmac.compare_digest(
            (secret or "").encode("utf-8"), self._settings.admin_bootstrap_secret.encode("utf-8")
        ):
            raise Forbidden("Invalid admin bootstrap secret.")
        if self._store.has_admin():
            raise Conflict(
                "An admin account already exists. Use the standard user management flow to add more admins."
            )
        email = normalize_email(email)
        if self._store.get_by_email(email) is not None:
            raise Conflict("An account with this email already exists.")
        first_name, last_name = _check_names(first_name, last_name)

        user = User(
            first_name=first_name,
            last_name=last_name,
            email=email,
            role=Role.admin.value,
            password_hash=hash_password(password, self._rounds),
            has_set_password=True,
            bootstrap_admin=True,
        )
        try:
            user.id = self._store.create_user(user)
        except IntegrityError as exc:
            # A concurrent bootstrap (or signup with the same email) won.
            raise Conflict("An admin account already exists.") from exc
        logger.info("Admin account created: %s", email)
        return public_profile(user)

    @_classified
    def create_user(
        self,
        admin_id: int,
        *,
        first_name: str,
        last_name: str,
        email: str,
        role: str = Role.employee.value,
    ) -> CreatedUser:
        """Create a pending user and an invite token for out-of-band delivery."""
        role = _invitable_role(role)
        email = normalize_email(email)
        first_name, last_name = _check_names(first_name, last_name)
        if self._store.get_by_email(email) is not None:
            raise Conflict("A user with this email already exists.")
        try:
            user_id = self._store.create_user(
                User(
                    first_name=first_name,
                    last_name=last_name,
                    email=email,
                    role=role,
                    has_set_password=False,
                    created_by=admin_id,
                )
            )
        except IntegrityError as exc:
            raise Conflict("A user with this email already exists.") from exc

        invite = self.invites.issue(user_id)
        logger.info("User created by admin %s: %s [%s]", admin_id, email, role)
        return self._created(self._store.get_by_id(user_id), invite)

    @_classified
    def reissue_invite(self, admin_id: int, user_id: int) -> CreatedUser:
        """Replace the invite of a user who has not set a password yet."""
        user = self._store.get_by_id(user_id)
        if user is None:
            raise NotFound()
        if user.has_set_password:
            raise Conflict("This user has already set a password.")
        invite = self.invites.issue(user_id)
        logger.info("Invite reissued by admin %s for user %s", admin_id, user_id)
        return self._created(user, invite)

    def _created(self, user: User, invite) -> CreatedUser:
        link = f"{self._settings.client_url.rstrip('/')}/set-password?token={invite.raw_token}"
        return CreatedUser(
            user=public_profile(user),
            invite_token=invite.raw_token,
            invite_link=link,
            expires_at=invite.expires_at,
        )

    @_classified
    def set_password(self, raw_invite_token: str, password: str) -> dict:
        """Redeem an invite token and set the first password."""
        return public_profile(self.invites.redeem(raw_invite_token, password))

    # ------------------------------------------------------------------
    # Login / tokens
    # ------------------------------------------------------------------

    @_classified
    def login(self, email: str, password: str) -> LoginResult:
        """Authenticate with email + password and open a new session.

        Order of checks: account exists, is active, has a password, is not
        locked, password matches. The lock check happens before the password
        is even looked at, so attempts made during a lock never count.
        """
        email = normalize_email(email)
        user = self._store.get_by_email(email)
        if user is None:
            verify_dummy(password)
            raise Unauthorized(_BAD_CREDENTIALS)
        if not user.is_active:
            raise Forbidden("Your account has been deactivated. Please contact your administrator.")
        if not user.has_set_password or not user.password_hash:
            raise Forbidden(
                "Please set your password using the invite link sent to your email before logging in."
            )

        now = self._clock()
        admission = check_admission(_lockout_state(user), now)
        if not admission.admitted:
            raise Locked(admission.minutes_remaining)

        if not verify_password(password, user.password_hash):
            self._fail_login(user, now)

        new_hash = hash_password(password, self._rounds) if needs_rehash(user.password_hash, self._rounds) else None

        def mutate(current: User) -> dict:
            fields = record_success(_lockout_state(current)).to_fields()
            fields["last_login_at"] = now
            if new_hash and current.password_hash == user.password_hash:
                fields["password_hash"] = new_hash
            return fields

        user = update_user_atomically(self._store, user.id, mutate)

        access = self.codec.issue_access(user.id, user.role, user.email)
        refresh = self.codec.issue_refresh(user.id)
        self.sessions.register(user.id, refresh)
        logger.info("User logged in: %s [%s]", user.email, user.role)
        return LoginResult(access_token=access, refresh_token=refresh, user=public_profile(user))

    def _fail_login(self, user: User, now: datetime) -> None:
        """Count a bad password, then raise Unauthorized with attempts left."""
        result = {}

        def mutate(current: User) -> dict | None:
            before = _lockout_state(current)
            after = record_failure(before, now)
            result["state"] = after
            return after.to_fields() if after != before else None

        update_user_atomically(self._store, user.id, mutate)
        state = result["state"]
        remaining = attempts_remaining(state)
        if state.lock_until is not None and remaining == 0:
            logger.warning("Account locked after %d failed login attempts: %s", state.attempts, user.email)
            message = f"{_BAD_CREDENTIALS} Your account has been temporarily locked."
        else:
            message = f"{_BAD_CREDENTIALS} {remaining} attempt(s) remaining before account lock."
        raise Unauthorized(message, detail={"attempts_remaining": remaining})

    @_classified
    def refresh_access_token(self, raw_refresh_token: str | None) -> TokenPair:
        """Rotate a refresh token into a fresh access + refresh pair."""
        if not raw_refresh_token:
            raise Unauthorized("Refresh token is required.")
        try:
            claims = self.codec.verify_refresh(raw_refresh_token)
        except Unauthorized as exc:
            raise Unauthorized("Invalid or expired refresh token.") from exc

        user = self._store.get_by_id(claims.user_id)
        if user is None:
            raise Unauthorized("User no longer exists.")
        if not user.is_active:
            raise Forbidden("Account is deactivated.")
        return self.sessions.rotate(user, raw_refresh_token)

    @_classified
    def logout(self, user_id: int, raw_refresh_token: str | None) -> None:
        """End the session behind one refresh token. Missing token is a no-op."""
        if not raw_refresh_token:
            return
        try:
            self.sessions.revoke_one(user_id, raw_refresh_token)
        except NotFound:
            return
        logger.info("User logged out: %s", user_id)

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    @_classified
    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        """Replace the password and sign the user out everywhere."""
        user = self._store.get_by_id(user_id)
        if user is None:
            raise NotFound()
        if not verify_password(current_password, user.password_hash):
            raise Unauthorized("Current password is incorrect.")

        new_hash = hash_password(new_password, self._rounds)
        now = self._clock()

        def mutate(current: User) -> dict:
            if current.password_hash != user.password_hash:
                raise Conflict("Password was changed concurrently. Please try again.")
            # Clearing sessions in the same write means no refresh token
            # issued before this point survives the change.
            return {"password_hash": new_hash, "password_changed_at": now, "sessions": []}

        update_user_atomically(self._store, user_id, mutate)
        logger.info("Password changed for user: %s", user.email)

    @_classified
    def get_me(self, user_id: int) -> dict:
        user = self._store.get_by_id(user_id)
        if user is None:
            raise NotFound()
        profile = public_profile(user)
        profile.update(
            full_name=full_name(user),
            last_login_at=user.last_login_at,
            created_at=user.created_at,
            active_sessions=len(self.sessions.active_sessions(user)),
        )
        return profile

    @_classified
    def list_users(self) -> list[dict]:
        """Every account with its activation, onboarding and lock status, for admins."""
        now = self._clock()
        return [
            {
                **public_profile(user),
                "is_active": user.is_active,
                "has_set_password": user.has_set_password,
                "is_locked": is_locked(user, now),
            }
            for user in self._store.list_users()
        ]

    @_classified
    def set_active(self, admin_id: int, user_id: int, active: bool) -> dict:
        """Activate or deactivate an account. Deactivation ends every session."""
        if admin_id == user_id and not active:
            raise Forbidden("You cannot deactivate your own account.")
        user = update_user_atomically(
            self._store,
            user_id,
            lambda current: {"is_active": active} if current.is_active != active else None,
        )
        if not active:
            revoked = self.sessions.revoke_all(user_id)
            logger.info("User %s deactivated by admin %s (%d sessions revoked)", user_id, admin_id, revoked)
        else:
            logger.info("User %s activated by admin %s", user_id, admin_id)
        profile = public_profile(user)
        profile["is_active"] = user.is_active
        return profile
