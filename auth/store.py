"""
auth/store.py -- SQLAlchemy Core persistence layer for users.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
and _to_columns are the mappers. Service code never touches SQL directly.

Concurrency:
  Sessions, lockout counters, password hash and invite fields are shared
  mutable state per user. Every write goes through compare_and_set(), which
  only succeeds if the row still carries the version the caller read:

      UPDATE users SET ..., version = version + 1
      WHERE id = :id AND version = :expected_version

  update_user_atomically() wraps that in a bounded re-read / retry loop so
  callers express a mutation as a pure function of the current record. There
  is no process-wide lock; users are independent.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only hashes of refresh and invite tokens are stored.

  bootstrap_admin is 1 for the admin created via the bootstrap secret and NULL
  for everyone else. A UNIQUE constraint on it enforces "at most one
  bootstrap admin" at the DB level (NULLs are distinct in UNIQUE constraints),
  which closes the race between two concurrent bootstrap requests.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.errors import InternalError, NotFound
from auth.models import Role, SessionEntry, User

logger = logging.getLogger("teamharbour.auth")

_MAX_CAS_ATTEMPTS = 5

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("first_name", String(50), nullable=False),
    Column("last_name", String(50), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL until the invite is redeemed
    Column("role", String(30), nullable=False, server_default=Role.employee.value),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("has_set_password", Boolean, nullable=False, server_default="0"),
    Column("invite_token_hash", String(64), index=True),  # SHA-256 hex
    Column("invite_token_expires_at", String(40)),
    Column("sessions", Text, nullable=False, server_default="[]"),  # JSON array
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(40)),
    Column("password_changed_at", String(40)),
    Column("last_login_at", String(40)),
    Column("created_by", Integer),
    Column("created_at", String(40), nullable=False),
    Column("bootstrap_admin", Integer, unique=True),  # 1 or NULL, see module docstring
    Column("version", Integer, nullable=False, server_default="0"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Switch each new SQLite connection to WAL so readers do not block the writer.

    journal_mode is a per-connection PRAGMA, hence the connect listener.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    # Fixed-width format so ISO strings compare correctly as text.
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _dump_sessions(sessions: list[SessionEntry]) -> str:
    return json.dumps(
        [
            {
                "token_hash": s.token_hash,
                "created_at": _to_iso(s.created_at),
                "expires_at": _to_iso(s.expires_at),
            }
            for s in sessions
        ]
    )


def _load_sessions(raw: str | None) -> list[SessionEntry]:
    return [
        SessionEntry(
            token_hash=item["token_hash"],
            created_at=_from_iso(item["created_at"]),
            expires_at=_from_iso(item["expires_at"]),
        )
        for item in json.loads(raw or "[]")
    ]


_DATETIME_FIELDS = frozenset(
    {"invite_token_expires_at", "lock_until", "password_changed_at", "last_login_at", "created_at"}
)


def _to_columns(fields: dict) -> dict:
    """Translate dataclass field values to column values."""
    columns = {}
    for name, value in fields.items():
        if name in _DATETIME_FIELDS:
            value = _to_iso(value)
        elif name == "sessions":
            value = _dump_sessions(value)
        elif name == "bootstrap_admin":
            value = 1 if value else None
        columns[name] = value
    return columns


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user_id = store.create_user(User(first_name="Ada", last_name="King", email="ada@x.com"))
        user = store.get_by_id(user_id)
        store.compare_and_set(user.id, user.version, login_attempts=1)
        store.close()
    """

    # Fields a caller may change after creation. id, created_at, created_by
    # and version are never written through compare_and_set().
    _MUTABLE_FIELDS: frozenset = frozenset(
        {
            "first_name",
            "last_name",
            "role",
            "password_hash",
            "is_active",
            "has_set_password",
            "invite_token_hash",
            "invite_token_expires_at",
            "sessions",
            "login_attempts",
            "lock_until",
            "password_changed_at",
            "last_login_at",
        }
    )

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists, or
        if a second bootstrap admin is inserted. Callers treat IntegrityError
        as a signal that a concurrent request already created the record.
        """
        fields = dataclasses.asdict(user)
        fields.pop("id")
        fields.pop("version")
        fields["sessions"] = user.sessions
        fields["created_at"] = user.created_at or _utcnow()
        with self.engine.connect() as conn:
            result = conn.execute(_users.insert().values(**_to_columns(fields), version=0))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by normalized email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_invite_hash(self, token_hash: str, now: datetime) -> User | None:
        """Look up the user holding an outstanding, unexpired invite.

        Expired invites are filtered in SQL, so "wrong token" and "expired
        token" both come back as None.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.invite_token_hash == token_hash) & (_users.c.invite_token_expires_at > _to_iso(now))
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return every user ordered by ID."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_user(row) for row in rows]

    def has_admin(self) -> bool:
        """Return True if any user holds the admin role."""
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.role == Role.admin.value)
            ).scalar()
        return (count or 0) > 0

    def compare_and_set(self, user_id: int, expected_version: int, **fields) -> bool:
        """Write `fields` only if the row is still at `expected_version`.

        Returns True if this writer won, False if the row changed (or vanished)
        since it was read. The version is bumped on every successful write.
        Unknown field names raise ValueError before any SQL runs.
        """
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown or immutable user fields: {unknown!r}")
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.version == expected_version))
                .values(**_to_columns(fields), version=_users.c.version + 1)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Atomic read-modify-write
# ---------------------------------------------------------------------------


def update_user_atomically(
    store,
    user_id: int,
    mutate: Callable[[User], dict | None],
    attempts: int = _MAX_CAS_ATTEMPTS,
) -> User:
    """Apply `mutate` to the current record under optimistic concurrency.

    `mutate` receives a freshly read User and returns the fields to change,
    or None to leave the record alone. It may run more than once, so it must
    not have side effects beyond computing the change. Returns the user as
    written (or as read, when nothing changed).

    Raises NotFound if the user does not exist and InternalError if every
    attempt lost the race.
    """
    for _ in range(attempts):
        user = store.get_by_id(user_id)
        if user is None:
            raise NotFound()
        changes = mutate(user)
        if not changes:
            return user
        if store.compare_and_set(user.id, user.version, **changes):
            return dataclasses.replace(user, **changes, version=user.version + 1)
        logger.debug("Version conflict on user %s, retrying", user_id)
    logger.error("Gave up updating user %s after %d version conflicts", user_id, attempts)
    raise InternalError()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        first_name=row.first_name,
        last_name=row.last_name,
        email=row.email,
        role=row.role,
        password_hash=row.password_hash,
        is_active=bool(row.is_active),
        has_set_password=bool(row.has_set_password),
        invite_token_hash=row.invite_token_hash,
        invite_token_expires_at=_from_iso(row.invite_token_expires_at),
        sessions=_load_sessions(row.sessions),
        login_attempts=row.login_attempts,
        lock_until=_from_iso(row.lock_until),
        password_changed_at=_from_iso(row.password_changed_at),
        last_login_at=_from_iso(row.last_login_at),
        created_by=row.created_by,
        created_at=_from_iso(row.created_at),
        bootstrap_admin=bool(row.bootstrap_admin),
        version=row.version,
    )
