import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tripauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("GOOGLE_REDIRECT_URL", "http://localhost:8080/auth/google/callback")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tripauth.config import Settings  # noqa: E402
from tripauth.service.auth import AuthService  # noqa: E402
from tripauth.service.errors import ExchangeFailed, ProfileFetchFailed  # noqa: E402
from tripauth.service.identity import ExternalProfile, ExternalTokens  # noqa: E402
from tripauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from tripauth.service.tokens import TokenCodec, TokenSettings  # noqa: E402
from tripauth.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
EPOCH = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock shared by the codec and the service."""

    def __init__(self, start: datetime = EPOCH):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeIdentityExchange:
    """In-process identity provider keyed by authorization code."""

    def __init__(self):
        self.profiles: dict[str, ExternalProfile] = {}
        self.fail_exchange = False
        self.fail_profile = False
        self.exchanged: list[str] = []
        self.refreshed: list[str] = []

    def register(
        self,
        code: str,
        external_id: str,
        email: str,
        *,
        verified: bool = True,
        given_name: str = "Ada",
        family_name: str = "Lovelace",
    ) -> ExternalProfile:
        profile = ExternalProfile(
            external_id=external_id,
            email=email,
            email_verified=verified,
            given_name=given_name,
            family_name=family_name,
            name=f"{given_name} {family_name}".strip(),
            picture_url="https://example.com/photo.jpg",
        )
        self.profiles[code] = profile
        return profile

    def authorization_url(self, state: str) -> str:
        return f"https://idp.example.com/auth?state={state}"

    async def exchange_code(self, code: str) -> ExternalTokens:
        self.exchanged.append(code)
        if self.fail_exchange:
            raise ExchangeFailed("provider rejected code") from ConnectionError("boom")
        if code not in self.profiles:
            raise ExchangeFailed("unknown authorization code")
        return ExternalTokens(access_token=f"ext-{code}", refresh_token=f"ext-refresh-{code}")

    async def fetch_profile(self, access_token: str) -> ExternalProfile:
        if self.fail_profile:
            raise ProfileFetchFailed("profile endpoint down")
        return self.profiles[access_token.removeprefix("ext-")]

    async def refresh_external_token(self, refresh_token: str) -> ExternalTokens:
        if self.fail_exchange:
            raise ExchangeFailed("provider rejected refresh token")
        self.refreshed.append(refresh_token)
        return ExternalTokens(access_token=f"ext-renewed-{len(self.refreshed)}")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        access_token_ttl_minutes=60,
        refresh_token_ttl_minutes=60 * 24 * 7,
        max_sessions_per_user=3,
        store_timeout_seconds=2.0,
        identity_timeout_seconds=2.0,
    )


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(TokenSettings.from_settings(settings), clock=clock)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def identity():
    fake = FakeIdentityExchange()
    fake.register("code-ada", "google-ada", "ada@example.com")
    return fake


@pytest.fixture
def auth_service(memory_store, identity, codec, settings, clock):
    return AuthService(memory_store, memory_store, identity, codec, settings, clock=clock)


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
