"""Tests for SessionManager: login, refresh, logout and session listing."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from conftest import TEST_PASSWORD
from taskauth.service.errors import (
    AccountBlockedError,
    InvalidCredentialsError,
    NotFoundError,
    NotVerifiedError,
    PermissionDeniedError,
    RefreshTokenNotFoundError,
    TwoFactorRequiredError,
)
from taskauth.service.passwords import make_unusable_password
from taskauth.service.sessions import DEFAULT_DEVICE, normalize_device
from taskauth.service.totp import generate_secret, generate_totp, verify_totp


def _wrong_totp(secret):
    for candidate in ("000000", "111111", "222222"):
        if not verify_totp(secret, candidate):
            return candidate
    raise AssertionError("no rejected candidate")


class TestLogin:
    """Tests for SessionManager.login."""

    async def test_success_issues_pair(self, runtime, make_user):
        user = make_user()
        result = await runtime.sessions.login(
            "alice@example.com", TEST_PASSWORD, "Chrome on Linux", "10.0.0.7"
        )

        assert result.user.id == user.id
        claims = runtime.tokens.verify_access_token(result.access_token)
        assert claims.user_id == user.id
        assert claims.roles == ("User",)
        record = runtime.store.find_refresh_token_by_token(result.refresh_token)
        assert record.device_info == "Chrome on Linux"
        assert record.ip_address == "10.0.0.7"

    async def test_email_is_case_insensitive(self, runtime, make_user):
        make_user()
        result = await runtime.sessions.login("ALICE@example.com", TEST_PASSWORD)
        assert result.user.email == "alice@example.com"

    async def test_wrong_password(self, runtime, make_user):
        make_user()
        with pytest.raises(InvalidCredentialsError):
            await runtime.sessions.login("alice@example.com", "not-the-password")

    async def test_unknown_email_looks_like_wrong_password(self, runtime):
        with pytest.raises(InvalidCredentialsError) as excinfo:
            await runtime.sessions.login("nobody@example.com", TEST_PASSWORD)
        assert excinfo.value.message == "invalid credentials"

    async def test_blocked_account(self, runtime, make_user):
        make_user(is_blocked=True)
        with pytest.raises(AccountBlockedError):
            await runtime.sessions.login("alice@example.com", TEST_PASSWORD)

    async def test_unverified_account(self, runtime, make_user):
        make_user(verified=False)
        with pytest.raises(NotVerifiedError):
            await runtime.sessions.login("alice@example.com", TEST_PASSWORD)

    async def test_passwordless_needs_oauth_flag(self, runtime, make_user):
        make_user()
        with pytest.raises(InvalidCredentialsError):
            await runtime.sessions.login("alice@example.com", None)

        result = await runtime.sessions.login("alice@example.com", None, oauth_verified=True)
        assert result.user.email == "alice@example.com"

    async def test_unusable_password_never_matches(self, runtime, make_user):
        make_user(password_hash=make_unusable_password())
        with pytest.raises(InvalidCredentialsError):
            await runtime.sessions.login("alice@example.com", "")

    async def test_same_device_login_supersedes(self, runtime, make_user):
        make_user()
        first = await runtime.sessions.login("alice@example.com", TEST_PASSWORD, "Chrome")
        other = await runtime.sessions.login("alice@example.com", TEST_PASSWORD, "Firefox")
        second = await runtime.sessions.login("alice@example.com", TEST_PASSWORD, "Chrome")

        assert runtime.store.find_refresh_token_by_token(first.refresh_token) is None
        assert runtime.store.find_refresh_token_by_token(other.refresh_token) is not None
        assert runtime.store.find_refresh_token_by_token(second.refresh_token) is not None

    async def test_one_active_session_per_device(self, runtime, make_user):
        user = make_user()
        chrome = "Chrome on Windows"
        safari = "Safari on Mac"

        await runtime.sessions.login("alice@example.com", TEST_PASSWORD, chrome)
        second = await runtime.sessions.login("alice@example.com", TEST_PASSWORD, chrome)

        sessions = await runtime.sessions.list_active_sessions(user.id)
        assert len(sessions) == 1
        assert sessions[0].device_info == chrome
        assert sessions[0].id == runtime.store.find_refresh_token_by_token(second.refresh_token).id

        third = await runtime.sessions.login("alice@example.com", TEST_PASSWORD, safari)

        sessions = await runtime.sessions.list_active_sessions(user.id)
        assert len(sessions) == 2
        assert sorted(s.device_info for s in sessions) == [chrome, safari]
        assert {s.id for s in sessions} == {
            runtime.store.find_refresh_token_by_token(second.refresh_token).id,
            runtime.store.find_refresh_token_by_token(third.refresh_token).id,
        }

    async def test_missing_device_uses_default(self, runtime, make_user):
        make_user()
        result = await runtime.sessions.login("alice@example.com", TEST_PASSWORD, "   ")
        record = runtime.store.find_refresh_token_by_token(result.refresh_token)
        assert record.device_info == DEFAULT_DEVICE


class TestTwoFactorLogin:
    async def test_code_required(self, runtime, make_user):
        secret = generate_secret()
        make_user(two_factor_secret=secret, two_factor_enabled=True)

        with pytest.raises(TwoFactorRequiredError) as excinfo:
            await runtime.sessions.login("alice@example.com", TEST_PASSWORD)
        assert excinfo.value.detail == {"two_factor_required": True}

    async def test_valid_code(self, runtime, make_user):
        secret = generate_secret()
        make_user(two_factor_secret=secret, two_factor_enabled=True)

        result = await runtime.sessions.login(
            "alice@example.com",
            TEST_PASSWORD,
            two_factor_token=generate_totp(secret, time.time()),
        )
        assert result.access_token

    async def test_wrong_code(self, runtime, make_user):
        secret = generate_secret()
        make_user(two_factor_secret=secret, two_factor_enabled=True)

        with pytest.raises(InvalidCredentialsError):
            await runtime.sessions.login(
                "alice@example.com", TEST_PASSWORD, two_factor_token=_wrong_totp(secret)
            )

    async def test_federated_login_skips_code(self, runtime, make_user):
        make_user(two_factor_secret=generate_secret(), two_factor_enabled=True)
        result = await runtime.sessions.login("alice@example.com", None, oauth_verified=True)
        assert result.access_token


class TestRefresh:
    async def test_refresh_rotates(self, runtime, make_user):
        make_user()
        login = await runtime.sessions.login("alice@example.com", TEST_PASSWORD)

        refreshed = await runtime.sessions.refresh(login.refresh_token)

        assert refreshed.refresh_token != login.refresh_token
        with pytest.raises(RefreshTokenNotFoundError):
            await runtime.sessions.refresh(login.refresh_token)

    async def test_blocked_user_cannot_refresh(self, runtime, make_user):
        user = make_user()
        login = await runtime.sessions.login("alice@example.com", TEST_PASSWORD)
        runtime.store.update_user(user.id, is_blocked=True)

        with pytest.raises(AccountBlockedError):
            await runtime.sessions.refresh(login.refresh_token)
        assert runtime.store.find_refresh_tokens_by_user(user.id) == []


class TestLogout:
    async def test_logout_revokes(self, runtime, make_user):
        user = make_user()
        login = await runtime.sessions.login("alice@example.com", TEST_PASSWORD)

        await runtime.sessions.logout(user.id, login.refresh_token)

        assert runtime.store.find_refresh_token_by_token(login.refresh_token) is None

    async def test_logout_never_raises(self, runtime):
        await runtime.sessions.logout(None, None)
        await runtime.sessions.logout("someone", "unknown-token")

    async def test_logout_ignores_other_users_token(self, runtime, make_user):
        make_user()
        login = await runtime.sessions.login("alice@example.com", TEST_PASSWORD)

        await runtime.sessions.logout("another-user", login.refresh_token)

        assert runtime.store.find_refresh_token_by_token(login.refresh_token) is not None

    async def test_logout_survives_store_failure(self, runtime, monkeypatch):
        def boom(token):
            raise RuntimeError("store down")

        monkeypatch.setattr(runtime.store, "find_refresh_token_by_token", boom)
        await runtime.sessions.logout("someone", "token")

    async def test_revoke_all(self, runtime, make_user):
        user = make_user()
        await runtime.sessions.login("alice@example.com", TEST_PASSWORD, "Chrome")
        await runtime.sessions.login("alice@example.com", TEST_PASSWORD, "Phone")

        assert await runtime.sessions.revoke_all_sessions(user.id) == 2
        assert await runtime.sessions.list_active_sessions(user.id) == []


class TestSessionListing:
    async def test_newest_first_and_only_active(self, runtime, make_user):
        user = make_user()
        now = datetime.now(timezone.utc)
        store = runtime.store
        older = store.create_refresh_token(
            user.id, "older", now + timedelta(days=1), device_info="Laptop",
            created_at=now - timedelta(hours=2),
        )
        newer = store.create_refresh_token(
            user.id, "newer", now + timedelta(days=1), device_info="Phone",
            created_at=now - timedelta(hours=1),
        )
        store.create_refresh_token(user.id, "expired", now - timedelta(minutes=1))
        revoked = store.create_refresh_token(user.id, "revoked", now + timedelta(days=1))
        store.revoke_refresh_token(revoked.id)

        sessions = await runtime.sessions.list_active_sessions(user.id)

        assert [s.id for s in sessions] == [newer.id, older.id]
        assert sessions[0].device_info == "Phone"

    async def test_revoke_own_session(self, runtime, make_user):
        user = make_user()
        login = await runtime.sessions.login("alice@example.com", TEST_PASSWORD)
        record = runtime.store.find_refresh_token_by_token(login.refresh_token)

        await runtime.sessions.revoke_session(user.id, record.id)

        assert runtime.store.find_refresh_token_by_id(record.id).is_revoked
        with pytest.raises(NotFoundError):
            await runtime.sessions.revoke_session(user.id, record.id)

    async def test_cannot_revoke_other_users_session(self, runtime, make_user):
        make_user()
        bob = make_user("bob@example.com")
        login = await runtime.sessions.login("alice@example.com", TEST_PASSWORD)
        record = runtime.store.find_refresh_token_by_token(login.refresh_token)

        with pytest.raises(PermissionDeniedError):
            await runtime.sessions.revoke_session(bob.id, record.id)
        assert not runtime.store.find_refresh_token_by_id(record.id).is_revoked

    async def test_unknown_session(self, runtime, make_user):
        user = make_user()
        with pytest.raises(NotFoundError):
            await runtime.sessions.revoke_session(user.id, "missing")


class TestSweep:
    def test_sweep_removes_dead_tokens(self, runtime, make_user):
        user = make_user()
        now = datetime.now(timezone.utc)
        runtime.store.create_refresh_token(user.id, "live", now + timedelta(days=1))
        runtime.store.create_refresh_token(user.id, "dead", now - timedelta(days=1))

        assert runtime.sessions.sweep_refresh_tokens() == 1
        assert runtime.store.find_refresh_token_by_token("live") is not None


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, DEFAULT_DEVICE),
        ("", DEFAULT_DEVICE),
        ("  Mozilla/5.0   (X11) ", "Mozilla/5.0 (X11)"),
        ("x" * 600, "x" * 512),
    ],
)
def test_normalize_device(raw, expected):
    assert normalize_device(raw) == expected
