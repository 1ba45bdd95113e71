import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authledger_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Keep argon2 cheap so the suite stays fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authledger.config import Settings  # noqa: E402
from authledger.service.auth import AuthService  # noqa: E402
from authledger.service.passwords import Argon2PasswordHasher  # noqa: E402
from authledger.service.runtime import reset_runtime_for_tests  # noqa: E402
from authledger.service.sessions import SessionLedger  # noqa: E402
from authledger.service.tokens import Keyring, SigningKey, TokenCodec  # noqa: E402
from authledger.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable clock in seconds, injected where ``time.time`` would be."""

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
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        jwt_key_id="test",
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def hasher(settings):
    return Argon2PasswordHasher(
        time_cost=settings.argon2_time_cost,
        memory_cost=settings.argon2_memory_cost,
        parallelism=settings.argon2_parallelism,
    )


@pytest.fixture
def codec(settings):
    return TokenCodec(settings.keyring())


@pytest.fixture
def ledger(memory_store):
    return SessionLedger(memory_store)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def auth_service(memory_store, ledger, codec, hasher, settings, clock):
    """Create auth service for testing."""
    return AuthService(memory_store, ledger, codec, hasher, settings, clock=clock)


@pytest.fixture
def other_codec():
    return TokenCodec(Keyring(SigningKey("test", "a-completely-different-secret-value")))


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
