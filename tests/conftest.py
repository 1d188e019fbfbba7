import asyncio
import inspect
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Environment must be in place before any stepauth import reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("EXPOSE_OTP_IN_RESPONSE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from stepauth.config import Settings  # noqa: E402
from stepauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from stepauth.storage.memory import MemoryStore  # noqa: E402

T0 = datetime(2024, 3, 1, 6, 30, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock injected into services."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        from datetime import timedelta

        self.now = self.now + timedelta(**delta)


class RecordingChannel:
    """Delivery channel double that remembers what it was asked to send."""

    def __init__(self, name: str, *, result: bool = True, error: Exception | None = None, delay: float = 0):
        self.name = name
        self.result = result
        self.error = error
        self.delay = delay
        self.sent = []

    async def send_code(self, target, code, purpose):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        self.sent.append((target, code, purpose))
        return self.result


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        environment="development",
        expose_otp_in_response=True,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
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
