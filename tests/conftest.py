import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="memberguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("AUTH_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("DATA_ENCRYPTION_KEY", "test-data-key-for-testing-only")
os.environ.setdefault("CAPTCHA_BYPASS", "true")
# TestClient talks plain http; secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")
# Rate limits fall back to the in-memory bucket
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from argon2 import PasswordHasher, Type  # noqa: E402

from memberguard.config import SecurityPolicy  # noqa: E402
from memberguard.service.audit import AuditRecorder  # noqa: E402
from memberguard.service.lockout import LockoutGuard  # noqa: E402
from memberguard.service.passwords import PasswordPolicyEngine  # noqa: E402
from memberguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from memberguard.service.sessions import SessionAuthority  # noqa: E402
from memberguard.service.two_factor import TwoFactorEngine  # noqa: E402
from memberguard.storage.common import normalize_email  # noqa: E402
from memberguard.storage.memory import MemoryStore  # noqa: E402
from memberguard.storage.models import Account  # noqa: E402

STRONG_PASSWORD = "Abcdef1!ghij"


class ManualClock:
    """Clock that only moves when a test tells it to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return ManualClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture(autouse=True)
def reset_runtime_state(monkeypatch, tmp_path, clock):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests(clock=clock)
    yield
    reset_runtime_for_tests()


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


@pytest.fixture
def policy():
    return SecurityPolicy()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "unit"), encryption_key="unit-test-key")


@pytest.fixture
def audit(store, clock):
    return AuditRecorder(store, "unit-test-chain-key", clock=clock)


@pytest.fixture
def passwords(store, policy, clock):
    # Cheap parameters keep hashing fast in unit tests
    hasher = PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    return PasswordPolicyEngine(store, policy, clock=clock, hasher=hasher)


@pytest.fixture
def lockout(store, policy, clock):
    return LockoutGuard(store, policy, clock=clock)


@pytest.fixture
def sessions(store, audit, clock):
    return SessionAuthority(store, audit, clock=clock)


@pytest.fixture
def two_factor(store, lockout, policy, clock):
    return TwoFactorEngine(store, lockout, policy, clock=clock)


@pytest.fixture
def make_account(store, passwords, clock):
    """Create a stored account whose password is ``password``."""

    def _make(email: str = "reader@example.com", password: str = STRONG_PASSWORD) -> Account:
        account = Account.new(email, normalize_email(email), passwords.hash_password(password))
        account.created_at = clock()
        return store.create_account(account)

    return _make
