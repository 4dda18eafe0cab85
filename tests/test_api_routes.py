"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> request validation ->
auth dependency injection -> AuthService -> UserStore -> response models and
the error envelope. Unit tests of the service would miss cookie handling,
status-code mapping and the validation layer.

Fixtures used (from conftest.py):
  - api_client: TestClient on a fresh shared-memory DB, rate limiting off
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from api.limiter import limiter

BOOTSTRAP_SECRET = "bootstrap-secret-for-tests"
ADMIN_EMAIL = "admin@teamharbour.test"
USER_EMAIL = "grace@teamharbour.test"
PASSWORD = "Str0ng!Pass"
NEW_PASSWORD = "N3w!Passw0rd"


def _bootstrap(client: TestClient) -> dict:
    resp = client.post(
        "/api/v1/auth/register-admin",
        json={
            "first_name": "Ada",
            "last_name": "King",
            "email": ADMIN_EMAIL,
            "password": PASSWORD,
            "bootstrap_secret": BOOTSTRAP_SECRET,
        },
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _login(client: TestClient, email: str = ADMIN_EMAIL, password: str = PASSWORD):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password})


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _admin_token(client: TestClient) -> str:
    _bootstrap(client)
    return _login(client).json()["access_token"]


def _onboard_user(client: TestClient, admin_token: str, role: str = "employee") -> dict:
    created = client.post(
        "/api/v1/auth/users",
        json={"first_name": "Grace", "last_name": "Hopper", "email": USER_EMAIL, "role": role},
        headers=_bearer(admin_token),
    )
    assert created.status_code == 201, created.text
    invite = created.json()
    resp = client.post(
        "/api/v1/auth/set-password",
        json={"invite_token": invite["invite_token"], "password": PASSWORD, "confirm_password": PASSWORD},
    )
    assert resp.status_code == 200, resp.text
    return invite["user"]


class TestHealth:
    def test_health_no_auth_required(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert "version" in resp.json()


class TestRegisterAdmin:
    def test_first_admin_is_created(self, api_client: TestClient) -> None:
        data = _bootstrap(api_client)
        assert data["role"] == "admin"
        assert "password" not in data
        assert "password_hash" not in data

    def test_second_admin_conflicts(self, api_client: TestClient) -> None:
        _bootstrap(api_client)
        resp = api_client.post(
            "/api/v1/auth/register-admin",
            json={
                "first_name": "Eve",
                "last_name": "Other",
                "email": "eve@teamharbour.test",
                "password": PASSWORD,
                "bootstrap_secret": BOOTSTRAP_SECRET,
            },
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_wrong_secret_is_forbidden(self, api_client: TestClient) -> None:
        resp = api_client.post(
            "/api/v1/auth/register-admin",
            json={
                "first_name": "Ada",
                "last_name": "King",
                "email": ADMIN_EMAIL,
                "password": PASSWORD,
                "bootstrap_secret": "wrong",
            },
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_weak_password_fails_validation(self, api_client: TestClient) -> None:
        resp = api_client.post(
            "/api/v1/auth/register-admin",
            json={
                "first_name": "Ada",
                "last_name": "King",
                "email": ADMIN_EMAIL,
                "password": "password",
                "bootstrap_secret": BOOTSTRAP_SECRET,
            },
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_failed"

    def test_register_admin_is_rate_limited(self, api_client: TestClient) -> None:
        limiter.enabled = True
        limiter.reset()
        body = {
            "first_name": "Ada",
            "last_name": "King",
            "email": ADMIN_EMAIL,
            "password": PASSWORD,
            "bootstrap_secret": "wrong",
        }
        statuses = [api_client.post("/api/v1/auth/register-admin", json=body).status_code for _ in range(11)]
        assert statuses[:10] == [403] * 10
        assert statuses[10] == 429


class TestLogin:
    def test_login_sets_refresh_cookie_only(self, api_client: TestClient) -> None:
        _bootstrap(api_client)
        resp = _login(api_client)
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 15 * 60
        assert data["user"]["email"] == ADMIN_EMAIL
        assert "refresh_token" not in data
        assert resp.headers["cache-control"] == "no-store"

        cookie = resp.headers["set-cookie"].lower()
        assert cookie.startswith("refresh_token=")
        assert "httponly" in cookie
        assert "samesite=strict" in cookie
        assert "path=/api/v1/auth" in cookie
        assert "max-age=604800" in cookie

    def test_email_is_case_insensitive(self, api_client: TestClient) -> None:
        _bootstrap(api_client)
        assert _login(api_client, email="ADMIN@teamharbour.test").status_code == 200

    def test_wrong_password_reports_attempts(self, api_client: TestClient) -> None:
        _bootstrap(api_client)
        resp = _login(api_client, password="Wr0ng!Pass")
        assert resp.status_code == 401
        error = resp.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["detail"] == {"attempts_remaining": 4}

    def test_unknown_email_is_unauthorized(self, api_client: TestClient) -> None:
        resp = _login(api_client, email="nobody@teamharbour.test")
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid email or password."

    def test_lockout_returns_423(self, api_client: TestClient) -> None:
        _bootstrap(api_client)
        for _ in range(5):
            assert _login(api_client, password="Wr0ng!Pass").status_code == 401
        resp = _login(api_client)
        assert resp.status_code == 423
        error = resp.json()["error"]
        assert error["code"] == "locked"
        assert error["detail"]["minutes_remaining"] in (29, 30)

    def test_login_is_rate_limited(self, api_client: TestClient) -> None:
        limiter.enabled = True
        limiter.reset()
        statuses = [_login(api_client, email="nobody@teamharbour.test").status_code for _ in range(11)]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429


class TestMe:
    def test_me_requires_bearer_token(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_invalid_token(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/auth/me", headers=_bearer("not-a-token"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"

    def test_me_returns_profile(self, api_client: TestClient) -> None:
        token = _admin_token(api_client)
        resp = api_client.get("/api/v1/auth/me", headers=_bearer(token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["full_name"] == "Ada King"
        assert data["last_login_at"] is not None


class TestUserManagement:
    def test_admin_creates_user_with_invite(self, api_client: TestClient) -> None:
        token = _admin_token(api_client)
        resp = api_client.post(
            "/api/v1/auth/users",
            json={"first_name": "Grace", "last_name": "Hopper", "email": USER_EMAIL, "role": "hr_manager"},
            headers=_bearer(token),
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["user"]["role"] == "hr_manager"
        assert data["invite_link"].endswith(data["invite_token"])

    def test_admin_lists_users(self, api_client: TestClient) -> None:
        admin_token = _admin_token(api_client)
        _onboard_user(api_client, admin_token)
        resp = api_client.get("/api/v1/auth/users", headers=_bearer(admin_token))
        assert resp.status_code == 200
        assert [u["email"] for u in resp.json()] == [ADMIN_EMAIL, USER_EMAIL]
        assert all(u["has_set_password"] for u in resp.json())
        assert not any(u["is_locked"] for u in resp.json())

    def test_non_admin_is_forbidden(self, api_client: TestClient) -> None:
        admin_token = _admin_token(api_client)
        _onboard_user(api_client, admin_token)
        user_token = _login(api_client, email=USER_EMAIL).json()["access_token"]
        resp = api_client.post(
            "/api/v1/auth/users",
            json={"first_name": "Eve", "last_name": "Other", "email": "eve@teamharbour.test"},
            headers=_bearer(user_token),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_unknown_role_fails_validation(self, api_client: TestClient) -> None:
        token = _admin_token(api_client)
        resp = api_client.post(
            "/api/v1/auth/users",
            json={"first_name": "Grace", "last_name": "Hopper", "email": USER_EMAIL, "role": "ceo"},
            headers=_bearer(token),
        )
        assert resp.status_code == 422

    def test_admin_role_cannot_be_invited(self, api_client: TestClient) -> None:
        token = _admin_token(api_client)
        resp = api_client.post(
            "/api/v1/auth/users",
            json={"first_name": "Eve", "last_name": "Other", "email": USER_EMAIL, "role": "admin"},
            headers=_bearer(token),
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_failed"
        listed = api_client.get("/api/v1/auth/users", headers=_bearer(token)).json()
        assert [u["email"] for u in listed] == [ADMIN_EMAIL]

    def test_invited_user_can_log_in_after_set_password(self, api_client: TestClient) -> None:
        _onboard_user(api_client, _admin_token(api_client))
        assert _login(api_client, email=USER_EMAIL).status_code == 200

    def test_deactivated_user_cannot_log_in(self, api_client: TestClient) -> None:
        admin_token = _admin_token(api_client)
        user = _onboard_user(api_client, admin_token)
        resp = api_client.patch(
            f"/api/v1/auth/users/{user['id']}", json={"is_active": False}, headers=_bearer(admin_token)
        )
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False
        assert _login(api_client, email=USER_EMAIL).status_code == 403

    def test_reissue_invite_for_active_user_conflicts(self, api_client: TestClient) -> None:
        admin_token = _admin_token(api_client)
        user = _onboard_user(api_client, admin_token)
        resp = api_client.post(f"/api/v1/auth/users/{user['id']}/invite", headers=_bearer(admin_token))
        assert resp.status_code == 409


class TestSetPassword:
    def test_mismatched_confirmation(self, api_client: TestClient) -> None:
        resp = api_client.post(
            "/api/v1/auth/set-password",
            json={"invite_token": "x" * 64, "password": PASSWORD, "confirm_password": NEW_PASSWORD},
        )
        assert resp.status_code == 422

    def test_unknown_invite(self, api_client: TestClient) -> None:
        resp = api_client.post(
            "/api/v1/auth/set-password",
            json={"invite_token": "x" * 64, "password": PASSWORD, "confirm_password": PASSWORD},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invite_invalid_or_expired"

    def test_set_password_is_rate_limited(self, api_client: TestClient) -> None:
        limiter.enabled = True
        limiter.reset()
        body = {"invite_token": "x" * 64, "password": PASSWORD, "confirm_password": PASSWORD}
        statuses = [api_client.post("/api/v1/auth/set-password", json=body).status_code for _ in range(11)]
        assert statuses[:10] == [400] * 10
        assert statuses[10] == 429
        assert api_client.post("/api/v1/auth/set-password", json=body).json()["error"]["code"] == "rate_limited"


class TestRefreshAndLogout:
    def test_refresh_from_cookie_rotates(self, api_client: TestClient) -> None:
        _bootstrap(api_client)
        first = _login(api_client).cookies["refresh_token"]
        resp = api_client.post("/api/v1/auth/refresh-token")
        assert resp.status_code == 200, resp.text
        assert resp.json()["access_token"]
        assert resp.headers["cache-control"] == "no-store"
        assert resp.cookies["refresh_token"] != first

    def test_reused_refresh_token_is_rejected(self, api_client: TestClient) -> None:
        _bootstrap(api_client)
        first = _login(api_client).cookies["refresh_token"]
        assert api_client.post("/api/v1/auth/refresh-token").status_code == 200
        api_client.cookies.clear()

        resp = api_client.post("/api/v1/auth/refresh-token", json={"refresh_token": first})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "session_invalid"

    def test_missing_refresh_token(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/auth/refresh-token")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_logout_clears_cookie_and_session(self, api_client: TestClient) -> None:
        _bootstrap(api_client)
        login = _login(api_client)
        token = login.json()["access_token"]
        refresh = login.cookies["refresh_token"]

        resp = api_client.post("/api/v1/auth/logout", headers=_bearer(token))
        assert resp.status_code == 200
        assert "max-age=0" in resp.headers["set-cookie"].lower()

        api_client.cookies.clear()
        again = api_client.post("/api/v1/auth/refresh-token", json={"refresh_token": refresh})
        assert again.status_code == 401

    def test_logout_requires_auth(self, api_client: TestClient) -> None:
        assert api_client.post("/api/v1/auth/logout").status_code == 401


class TestChangePassword:
    def test_change_password_signs_out_everywhere(self, api_client: TestClient) -> None:
        _bootstrap(api_client)
        login = _login(api_client)
        token = login.json()["access_token"]
        refresh = login.cookies["refresh_token"]

        resp = api_client.post(
            "/api/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD, "confirm_new_password": NEW_PASSWORD},
            headers=_bearer(token),
        )
        assert resp.status_code == 200, resp.text

        api_client.cookies.clear()
        assert api_client.post("/api/v1/auth/refresh-token", json={"refresh_token": refresh}).status_code == 401
        assert _login(api_client, password=NEW_PASSWORD).status_code == 200

    def test_wrong_current_password(self, api_client: TestClient) -> None:
        token = _admin_token(api_client)
        resp = api_client.post(
            "/api/v1/auth/change-password",
            json={"current_password": "Wr0ng!Pass", "new_password": NEW_PASSWORD, "confirm_new_password": NEW_PASSWORD},
            headers=_bearer(token),
        )
        assert resp.status_code == 401
