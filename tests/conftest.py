import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before any import that might build the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="walletauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ALGORITHM", "ES256")
os.environ.setdefault("ALLOWED_AUDIENCES", "partner.example,other.example")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from walletauth.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path_factory, monkeypatch):
    # fresh state file and development keys per test, kept apart from the
    # test's own tmp_path
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path_factory.mktemp("shared_fs")))
    reset_runtime_for_tests()
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
