import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

_TEST_ENV = {
    "SHARED_FS_ROOT": tempfile.mkdtemp(prefix="movieauth_test_"),
    "TEST_MODE": "true",
    "USE_MEMORY_STORE": "true",
    "ALLOW_REDIS_FALLBACK_DEV": "true",
    "JWT_SECRET": "movieauth-suite-signing-key-not-for-real-deployments",
    # blank keeps rate limit counters in process, fresh per runtime
    "REDIS_URL": "",
    # argon2 at its cheapest setting
    "PASSWORD_HASH_COST": "4",
}
# applied before anything imports movieauth.config
for _name, _value in _TEST_ENV.items():
    os.environ.setdefault(_name, _value)

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest  # noqa: E402

from movieauth.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_runtime():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    from movieauth.config import get_settings

    return get_settings()


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Run ``async def`` tests on a fresh event loop."""
    if not inspect.iscoroutinefunction(pyfuncitem.obj):
        return None
    wanted = pyfuncitem._fixtureinfo.argnames
    kwargs = {name: pyfuncitem.funcargs[name] for name in wanted if name in pyfuncitem.funcargs}
    asyncio.run(pyfuncitem.obj(**kwargs))
    return True
