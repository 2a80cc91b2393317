import asyncio
import inspect
import os
import shutil
import sys
import tempfile
from pathlib import Path

# Must be in place before classgate reads its settings
TEST_ENV = {
    "SHARED_FS_ROOT": tempfile.mkdtemp(prefix="classgate_test_"),
    "TEST_MODE": "true",
    "USE_MEMORY_STORE": "true",
    "ALLOW_REDIS_FALLBACK_DEV": "true",
    "JWT_SECRET": "classgate-test-signing-secret-not-for-production-use",
    # in-process token buckets; point at a Redis to exercise SyncRedisCache
    "REDIS_URL": "",
}
for _name, _value in TEST_ENV.items():
    os.environ.setdefault(_name, _value)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from classgate.service.runtime import reset_runtime_for_tests  # noqa: E402


def _drop_snapshot() -> None:
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)


@pytest.fixture(autouse=True)
def fresh_runtime():
    _drop_snapshot()
    reset_runtime_for_tests()
    yield
    _drop_snapshot()
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
