import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from lawrose_auth.config import Settings, reset_settings_cache  # noqa: E402
from lawrose_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from lawrose_auth.service.tokens import TokenService  # noqa: E402
from lawrose_auth.storage.memory import MemoryKeyValueStore  # noqa: E402


class FakeClock:
    """Controllable epoch-seconds clock shared by a store and a service."""

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
    reset_settings_cache()


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
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        use_memory_store=True,
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        jwt_refresh_secret="Test-Refresh-Secret_for-Automation-Only-123456789!",
        cleanup_enabled=False,
    )


@pytest.fixture
def store(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def token_service(store, settings, clock):
    return TokenService(store, settings, clock=clock)
