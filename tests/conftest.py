import asyncio
import inspect
import os
import sys
import tempfile
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before anything builds the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="accountia_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_PERSISTENT_STATE", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("FRONTEND_URL", "http://localhost:3000")
os.environ.setdefault("API_BASE_URL", "http://localhost:4789")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from accountia_auth.config import Settings  # noqa: E402
from accountia_auth.service.auth import AuthService  # noqa: E402
from accountia_auth.service.oauth import GoogleOAuthFlow  # noqa: E402
from accountia_auth.service.passwords import hash_password  # noqa: E402
from accountia_auth.service.rate_limit import RateLimiter  # noqa: E402
from accountia_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from accountia_auth.service.tokens import TokenService  # noqa: E402
from accountia_auth.service.two_factor import TwoFactorEngine  # noqa: E402
from accountia_auth.storage.memory import MemoryUserStore  # noqa: E402
from accountia_auth.storage.models import User  # noqa: E402

TEST_PASSWORD = "CorrectHorse1!"


class FakeClock:
    """Settable clock passed to services in place of ``utcnow``."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingEmail:
    """Stands in for ``EmailService`` and keeps every message it was asked to send."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.confirmations: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []

    def send_confirmation_email(self, to_email: str, token: str) -> bool:
        self.confirmations.append((to_email, token))
        return self.succeed

    def send_password_reset_email(self, to_email: str, token: str) -> bool:
        self.resets.append((to_email, token))
        return self.succeed


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        frontend_url="http://localhost:3000",
        api_base_url="http://localhost:4789",
        google_client_id="client-id.apps.googleusercontent.com",
        google_client_secret="google-secret",
        google_callback_url="http://localhost:4789/api/auth/google/callback",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryUserStore()


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(clock=clock)


@pytest.fixture
def tokens(settings, store, clock):
    return TokenService(settings, store, clock=clock)


@pytest.fixture
def two_factor(settings, store):
    return TwoFactorEngine(settings, store)


@pytest.fixture
def oauth(settings, store, tokens):
    return GoogleOAuthFlow(settings, store, tokens)


@pytest.fixture
def auth_service(settings, store, rate_limiter, tokens, two_factor, oauth, email, clock):
    return AuthService(
        settings,
        store,
        rate_limiter=rate_limiter,
        tokens=tokens,
        two_factor=two_factor,
        oauth=oauth,
        email=email,
        clock=clock,
    )


def make_user(store, **overrides) -> User:
    fields = {
        "username": "alice01",
        "email": "alice@example.com",
        "password_hash": hash_password(TEST_PASSWORD),
        "first_name": "Alice",
        "last_name": "Liddell",
        "birthdate": date(1990, 5, 17),
        "accept_terms": True,
        "email_confirmed": True,
    }
    fields.update(overrides)
    return store.save(User.new(**fields))


@pytest.fixture
def user_factory(store):
    return lambda **overrides: make_user(store, **overrides)


@pytest.fixture
def confirmed_user(store):
    return make_user(store)


@pytest.fixture
def password():
    return TEST_PASSWORD


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
