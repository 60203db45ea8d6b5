import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any tokenwarden module reads it
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REAPER_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenwarden.config import Settings, reset_settings_cache  # noqa: E402
from tokenwarden.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Settings with a fixed secret and the in-memory store."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        use_memory_store=True,
        reaper_enabled=False,
    )


@pytest.fixture
def store():
    return MemoryStore()


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
