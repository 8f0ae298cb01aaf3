import asyncio
import inspect
import os

# Test environment must be in place before anything builds Settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Rate limits and security events fall back to in-process handling
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher  # noqa: E402

from sessionforge.service.passwords import PasswordVerifier  # noqa: E402
from sessionforge.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def fast_verifier():
    """argon2id with minimal cost parameters so unit tests stay fast."""
    return PasswordVerifier(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


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
