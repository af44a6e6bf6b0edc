import asyncio
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gatehouse_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")
# Empty URL keeps every test on the in-process TTL store
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault(
    "SEED_USERS",
    json.dumps(
        [
            {
                "id": "user-reader",
                "email": "reader@example.com",
                "password": "Reader#Pass2024",
                "role": "user",
                "display_name": "Rea Der",
            },
            {
                "id": "user-editor",
                "email": "editor@example.com",
                "password": "Editor#Pass2024",
                "role": "editor",
            },
            {
                "id": "user-dormant",
                "email": "dormant@example.com",
                "password": "Dormant#Pass2024",
                "role": "user",
                "is_active": False,
            },
        ]
    ),
)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatehouse.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingDispatcher:
    """Notification dispatcher that keeps every code it was asked to send."""

    def __init__(self, *, deliver: bool = True):
        self.deliver = deliver
        self.sent = []

    async def send_code(self, destination, code, display_name=None):
        self.sent.append((destination, code, display_name))
        return self.deliver

    @property
    def last_code(self):
        return self.sent[-1][1]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


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
