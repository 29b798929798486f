import asyncio
import inspect
import os
import tempfile

# Environment defaults must be in place before taskauth modules configure themselves
_test_tmp_dir = tempfile.mkdtemp(prefix="taskauth_test_")
os.environ.setdefault("DATA_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

from taskauth.config import Settings  # noqa: E402
from taskauth.service.passwords import hash_password  # noqa: E402
from taskauth.service.runtime import Runtime  # noqa: E402
from taskauth.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "CorrectHorse9!"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_root=str(tmp_path),
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        cookie_secure=False,
        oauth_github_client_id="gh-client",
        oauth_github_client_secret="gh-secret",
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_redirect_uri="http://localhost:3000/oauth/callback",
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"), encryption_key="store-test-key")


@pytest.fixture
def runtime(settings, memory_store):
    return Runtime(settings, store=memory_store)


@pytest.fixture
def make_user(runtime):
    """Factory for users that already exist in the store with a password."""

    def _make(
        email="alice@example.com",
        password=TEST_PASSWORD,
        *,
        username=None,
        verified=True,
        role="User",
        **changes,
    ):
        user = runtime.store.create_user(
            email,
            username or email.split("@")[0],
            password_hash=hash_password(password),
            is_verified=verified,
        )
        if role:
            runtime.permissions.grant_role(user.id, role)
        if changes:
            user = runtime.store.update_user(user.id, **changes)
        return user

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
