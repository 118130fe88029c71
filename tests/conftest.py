import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-automation-only-0001")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-0002")
# Revocation entries live in the in-process MemoryCache unless REDIS_URL is set
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from warden.config import Settings  # noqa: E402
from warden.service.credentials import FastPasswordHasher  # noqa: E402
from warden.service.ownership import OwnershipRegistry  # noqa: E402
from warden.service.pipeline import AuthorizationPipeline  # noqa: E402
from warden.service.rbac import RBACResolver  # noqa: E402
from warden.service.revocation import RevocationRegistry  # noqa: E402
from warden.service.runtime import reset_runtime_for_tests  # noqa: E402
from warden.service.seed import seed_defaults  # noqa: E402
from warden.service.session import SessionService  # noqa: E402
from warden.service.tokens import TokenCodec  # noqa: E402
from warden.storage.memory import MemoryStore  # noqa: E402
from warden.storage.memory_cache import MemoryCache  # noqa: E402

ACCESS_SECRET = "unit-access-secret-0123456789abcdefghijkl"
REFRESH_SECRET = "unit-refresh-secret-0123456789abcdefghijk"


class FakeClock:
    """Manually advanced epoch clock shared by codec, registry and cache."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


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
        jwt_access_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        jwt_access_expires_in="15m",
        jwt_refresh_expires_in="7d",
    )


@pytest.fixture
def store():
    memory_store = MemoryStore()
    seed_defaults(memory_store)
    return memory_store


@pytest.fixture
def hasher():
    return FastPasswordHasher()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def codec(settings, clock, store):
    return TokenCodec.from_settings(
        settings, clock=clock, ttl_overrides=store.get_system_settings
    )


@pytest.fixture
def registry(cache, clock):
    return RevocationRegistry(cache, clock=clock)


@pytest.fixture
def resolver(store):
    return RBACResolver(store)


@pytest.fixture
def ownership():
    return OwnershipRegistry()


@pytest.fixture
def pipeline(codec, registry, resolver, ownership):
    return AuthorizationPipeline(codec, registry, resolver, ownership)


@pytest.fixture
def sessions(store, hasher, codec, registry, resolver):
    return SessionService(store, hasher, codec, registry, resolver, default_role="user")


PRINCIPAL_PASSWORD = "CorrectHorse9!"


@pytest.fixture
def make_principal(store, hasher):
    def _make(email, username, *, password=PRINCIPAL_PASSWORD, roles=("user",)):
        principal = store.create_principal(email, username, hasher.hash(password))
        for code in roles:
            store.assign_role(principal.id, store.get_role_by_code(code).id)
        return principal

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
