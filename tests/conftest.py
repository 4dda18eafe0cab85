"""
tests/conftest.py -- Shared test fixtures for TeamHarbour Auth tests.

This module provides:
  - settings: a Settings instance with fixed secrets and bcrypt cost 4
  - clock: a controllable UTC clock injected into AuthService
  - store / service: a UserStore on a private in-memory SQLite DB and the
    AuthService built on top of it
  - fake_store / fake_service: the same over tests/fakes.py, whose write hook
    lets a test interleave two writers
  - admin / make_user: helpers that put accounts into a known state
  - api_client: TestClient wired to an isolated store through a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
api_client because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit-level fixtures run on one thread and use plain :memory:.

The DEBUG env var must be set before any api/ import so get_settings()
auto-generates secrets in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate secrets in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.service import AuthService
from auth.store import UserStore
from core.config import Settings
from fakes import InMemoryUserStore

BOOTSTRAP_SECRET = "bootstrap-secret-for-tests"
ADMIN_EMAIL = "admin@teamharbour.test"
PASSWORD = "Str0ng!Pass"


class Clock:
    """Callable UTC clock that only moves when a test tells it to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "access_token_secret": "a" * 64,
        "refresh_token_secret": "r" * 64,
        "admin_bootstrap_secret": BOOTSTRAP_SECRET,
        "bcrypt_rounds": 4,
        "client_url": "http://app.teamharbour.test",
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    user_store = UserStore("sqlite:///:memory:")
    yield user_store
    user_store.close()


@pytest.fixture
def service(store: UserStore, settings: Settings, clock: Clock) -> AuthService:
    return AuthService(store, settings, clock=clock)


@pytest.fixture
def fake_store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def fake_service(fake_store: InMemoryUserStore, settings: Settings, clock: Clock) -> AuthService:
    return AuthService(fake_store, settings, clock=clock)


@pytest.fixture
def admin(service: AuthService) -> dict:
    """Bootstrap the admin account and return its public profile."""
    return service.register_admin(
        BOOTSTRAP_SECRET,
        first_name="Ada",
        last_name="King",
        email=ADMIN_EMAIL,
        password=PASSWORD,
    )


@pytest.fixture
def make_user(service: AuthService, admin: dict):
    """Return a factory that creates an invited user and redeems the invite.

    Pass activate=False to leave the user pending (no password yet).
    """

    def _make(email: str = "grace@teamharbour.test", role: str = "employee", activate: bool = True):
        created = service.create_user(
            admin["id"], first_name="Grace", last_name="Hopper", email=email, role=role
        )
        if activate:
            service.set_password(created.invite_token, PASSWORD)
        return created

    return _make


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store into app.state so TestClient routes see
    an isolated test DB rather than the configured database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.user_store = user_store
        app.state.auth_service = AuthService(user_store, settings)
        yield

    return test_lifespan


@pytest.fixture
def api_client(settings: Settings) -> Generator[TestClient, None, None]:
    """Yield a TestClient backed by a fresh named shared-memory database.

    Rate limiting is switched off so tests can log in freely; the rate-limit
    test turns it back on explicitly.
    """
    db_url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    user_store = UserStore(db_url)
    app.router.lifespan_context = _patch_lifespan(user_store, settings)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client

    limiter.enabled = True
    limiter.reset()
    user_store.close()
