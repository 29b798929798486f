"""Integration tests for the HTTP auth flow.

Tests the complete flow including:
- Registration and activation
- Login, token refresh and logout
- Transparent refresh of expired access tokens
- Permission-guarded user administration
- Password reset and two-factor login
"""

import time
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import TEST_PASSWORD
from taskauth.app import create_app
from taskauth.middleware import REFRESH_COOKIE
from taskauth.service.totp import generate_totp


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


def _login(client, email="alice@example.com", password=TEST_PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _assert_error(response, status_code, code):
    assert response.status_code == status_code
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code
    assert body["error"]["message"]
    assert body["request_id"]
    return body["error"]


class TestRegistrationFlow:
    def test_register_activate_login(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "New@Example.com", "password": TEST_PASSWORD, "full_name": "New User"},
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == "new@example.com"
        assert data["user"]["is_verified"] is False
        assert data["user"]["roles"] == ["User"]
        code = data["activation_code"]

        _assert_error(_login(client, "new@example.com"), 401, "unauthorized")

        activated = client.post("/v1/auth/activate", json={"email": "new@example.com", "code": code})
        assert activated.status_code == 200
        assert activated.json()["data"]["is_verified"] is True

        login = _login(client, "new@example.com")
        assert login.status_code == 200
        assert login.json()["data"]["user"]["username"] == "new"

    def test_duplicate_email_conflicts(self, client, make_user):
        make_user()
        response = client.post(
            "/v1/auth/register", json={"email": "alice@example.com", "password": TEST_PASSWORD}
        )
        _assert_error(response, 409, "conflict")

    def test_invalid_email_is_validation_error(self, client):
        response = client.post(
            "/v1/auth/register", json={"email": "not-an-email", "password": TEST_PASSWORD}
        )
        error = _assert_error(response, 400, "validation_error")
        assert error["details"]

    def test_short_password_rejected(self, client):
        response = client.post(
            "/v1/auth/register", json={"email": "new@example.com", "password": "short"}
        )
        _assert_error(response, 400, "validation_error")

    def test_code_hidden_outside_test_mode(self, runtime, settings):
        runtime.settings = settings.model_copy(update={"test_mode": False})
        with TestClient(create_app(runtime=runtime)) as client:
            response = client.post(
                "/v1/auth/register", json={"email": "new@example.com", "password": TEST_PASSWORD}
            )
        assert response.status_code == 201
        assert response.json()["data"]["activation_code"] is None

    def test_resend_activation(self, client):
        client.post("/v1/auth/register", json={"email": "new@example.com", "password": TEST_PASSWORD})
        response = client.post("/v1/auth/activation/resend", json={"email": "new@example.com"})
        assert response.status_code == 200
        code = response.json()["data"]["code"]

        activated = client.post("/v1/auth/activate", json={"email": "new@example.com", "code": code})
        assert activated.status_code == 200

        _assert_error(
            client.post("/v1/auth/activation/resend", json={"email": "ghost@example.com"}),
            404,
            "not_found",
        )


class TestLoginAndTokens:
    """Tests for login, /me, refresh and logout."""

    def test_login_sets_cookie_and_me_works(self, client, make_user):
        user = make_user(full_name="Alice Example")
        response = _login(client, device_info="pytest-device")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["user"]["id"] == user.id
        assert client.cookies.get(REFRESH_COOKIE) == data["refresh_token"]
        assert "httponly" in response.headers["set-cookie"].lower()

        me = client.get("/v1/auth/me", headers=_bearer(data["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "alice@example.com"
        assert "View Task" in me.json()["data"]["permissions"]

    def test_wrong_password(self, client, make_user):
        make_user()
        error = _assert_error(_login(client, password="WrongPassword1"), 401, "unauthorized")
        assert error["message"] == "invalid credentials"

    def test_blocked_login_is_forbidden(self, client, make_user):
        make_user(is_blocked=True)
        _assert_error(_login(client), 403, "forbidden")

    def test_me_requires_token(self, client):
        _assert_error(client.get("/v1/auth/me"), 401, "unauthorized")
        _assert_error(client.get("/v1/auth/me", headers={"Authorization": "Bearer"}), 401, "unauthorized")

    def test_refresh_from_cookie(self, client, make_user):
        make_user()
        first = _login(client).json()["data"]

        refreshed = client.post("/v1/auth/refresh")

        assert refreshed.status_code == 200
        second = refreshed.json()["data"]
        assert second["refresh_token"] != first["refresh_token"]
        assert client.cookies.get(REFRESH_COOKIE) == second["refresh_token"]

    def test_refresh_token_is_single_use(self, client, make_user):
        make_user()
        first = _login(client).json()["data"]
        client.cookies.clear()

        ok = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert ok.status_code == 200
        replay = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        _assert_error(replay, 401, "unauthorized")

    def test_refresh_without_token(self, client):
        _assert_error(client.post("/v1/auth/refresh"), 401, "unauthorized")

    def test_logout_revokes_and_clears_cookie(self, client, make_user):
        make_user()
        data = _login(client).json()["data"]

        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"] == {"status": "logged_out"}
        assert client.cookies.get(REFRESH_COOKIE) is None
        replay = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        _assert_error(replay, 401, "unauthorized")

    def test_logout_without_session_still_succeeds(self, client):
        response = client.post("/v1/auth/logout", json={"refresh_token": "unknown"})
        assert response.status_code == 200

    def test_logout_all(self, client, make_user):
        make_user()
        _login(client, device_info="Laptop")
        data = _login(client, device_info="Phone").json()["data"]

        response = client.post("/v1/auth/logout-all", headers=_bearer(data["access_token"]))

        assert response.status_code == 200
        assert response.json()["data"] == {"revoked": 2}


class TestTransparentRefresh:
    def test_expired_access_token_with_cookie(self, client, runtime, make_user):
        make_user()
        data = _login(client).json()["data"]
        moved = datetime.now(timezone.utc) + timedelta(minutes=20)
        runtime.tokens._now = lambda: moved

        response = client.get("/v1/auth/me", headers=_bearer(data["access_token"]))

        assert response.status_code == 200
        new_header = response.headers["Authorization"]
        assert new_header.startswith("Bearer ")
        assert new_header != f"Bearer {data['access_token']}"
        assert client.cookies.get(REFRESH_COOKIE) != data["refresh_token"]

    def test_expired_access_token_without_cookie(self, client, runtime, make_user):
        make_user()
        data = _login(client).json()["data"]
        client.cookies.clear()
        moved = datetime.now(timezone.utc) + timedelta(minutes=20)
        runtime.tokens._now = lambda: moved

        response = client.get("/v1/auth/me", headers=_bearer(data["access_token"]))

        error = _assert_error(response, 401, "unauthorized")
        assert error["message"] == "session expired"


class TestSessions:
    def test_list_and_revoke(self, client, make_user):
        make_user()
        _login(client, device_info="Laptop")
        data = _login(client, device_info="Phone").json()["data"]
        headers = _bearer(data["access_token"])

        listed = client.get("/v1/auth/sessions", headers=headers)
        items = listed.json()["data"]["items"]
        assert [i["device_info"] for i in items] == ["Phone", "Laptop"]

        revoked = client.delete(f"/v1/auth/sessions/{items[1]['id']}", headers=headers)
        assert revoked.status_code == 200

        remaining = client.get("/v1/auth/sessions", headers=headers).json()["data"]["items"]
        assert [i["device_info"] for i in remaining] == ["Phone"]

    def test_revoke_unknown_session(self, client, make_user):
        make_user()
        data = _login(client).json()["data"]
        response = client.delete("/v1/auth/sessions/nope", headers=_bearer(data["access_token"]))
        _assert_error(response, 404, "not_found")


class TestUserAdministration:
    """Tests for the Manage Users guarded routes."""

    def _admin_headers(self, client, make_user):
        make_user("admin@example.com", role="Admin")
        data = _login(client, "admin@example.com").json()["data"]
        return _bearer(data["access_token"])

    def test_regular_user_is_forbidden(self, client, make_user):
        make_user()
        data = _login(client).json()["data"]

        response = client.get("/v1/users", headers=_bearer(data["access_token"]))

        error = _assert_error(response, 403, "forbidden")
        assert error["details"] == {"required": ["Manage Users"]}

    def test_admin_lists_users(self, client, make_user):
        make_user()
        headers = self._admin_headers(client, make_user)

        response = client.get("/v1/users", headers=headers)

        assert response.status_code == 200
        emails = {u["email"] for u in response.json()["data"]["items"]}
        assert emails == {"alice@example.com", "admin@example.com"}

    def test_assign_role(self, client, make_user):
        alice = make_user()
        headers = self._admin_headers(client, make_user)

        response = client.post(
            "/v1/users/assign-role", json={"user_id": alice.id, "role": "Manager"}, headers=headers
        )

        assert response.status_code == 200
        assert response.json()["data"]["roles"] == ["Manager", "User"]

    def test_assign_unknown_role(self, client, make_user):
        alice = make_user()
        headers = self._admin_headers(client, make_user)
        response = client.post(
            "/v1/users/assign-role", json={"user_id": alice.id, "role": "Overlord"}, headers=headers
        )
        _assert_error(response, 404, "not_found")

    def test_block_takes_effect_on_next_request(self, client, make_user):
        alice = make_user()
        alice_token = _login(client, device_info="alice-device").json()["data"]["access_token"]
        headers = self._admin_headers(client, make_user)

        response = client.post(f"/v1/users/{alice.id}/block", json={"blocked": True}, headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["is_blocked"] is True
        _assert_error(client.get("/v1/auth/me", headers=_bearer(alice_token)), 403, "forbidden")

    def test_cannot_block_self(self, client, make_user, runtime):
        headers = self._admin_headers(client, make_user)
        admin = runtime.store.find_user_by_email("admin@example.com")
        response = client.post(f"/v1/users/{admin.id}/block", headers=headers)
        _assert_error(response, 400, "validation_error")


class TestPasswordResetFlow:
    def test_forgot_and_reset(self, client, make_user):
        make_user()
        forgot = client.post("/v1/auth/password/forgot", json={"email": "alice@example.com"})
        assert forgot.status_code == 200
        code = forgot.json()["data"]["code"]

        reset = client.post(
            "/v1/auth/password/reset",
            json={"email": "alice@example.com", "code": code, "new_password": "BrandNewPass42"},
        )
        assert reset.status_code == 200

        _assert_error(_login(client), 401, "unauthorized")
        assert _login(client, password="BrandNewPass42").status_code == 200

    def test_unknown_email_gets_same_answer(self, client):
        response = client.post("/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        assert response.json()["data"] == {"sent": True, "code": None}


class TestTwoFactorFlow:
    def test_enrol_then_login_with_code(self, client, make_user):
        make_user()
        headers = _bearer(_login(client).json()["data"]["access_token"])

        setup = client.post("/v1/auth/2fa/setup", headers=headers).json()["data"]
        confirm = client.post(
            "/v1/auth/2fa/confirm",
            json={"code": generate_totp(setup["secret"], time.time())},
            headers=headers,
        )
        assert confirm.json()["data"]["two_factor_enabled"] is True

        error = _assert_error(_login(client), 401, "unauthorized")
        assert error["details"] == {"two_factor_required": True}

        with_code = _login(client, two_factor_token=generate_totp(setup["secret"], time.time()))
        assert with_code.status_code == 200


class TestOAuthRoutes:
    def test_start_returns_authorization_url(self, client):
        response = client.post("/v1/auth/oauth/github/start")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["provider"] == "github"
        assert data["authorization_url"].startswith("https://github.com/login/oauth/authorize?")

    def test_unsupported_provider(self, client):
        _assert_error(client.post("/v1/auth/oauth/microsoft/start"), 400, "validation_error")

    def test_callback_with_unknown_state(self, client):
        response = client.get("/v1/auth/oauth/github/callback", params={"code": "c", "state": "s"})
        _assert_error(response, 401, "unauthorized")


class TestAppSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["Cache-Control"].startswith("no-store")

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
