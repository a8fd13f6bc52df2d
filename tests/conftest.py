import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any import that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
# No Redis in the default runtime; tests that need the cache tier inject fakeredis
os.environ["REDIS_URL"] = ""
os.environ.setdefault("SESSION_CLEANUP_INTERVAL_SECONDS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fakeredis import aioredis as fake_aioredis  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from bizmarket.service.runtime import reset_runtime_for_tests  # noqa: E402
from bizmarket.storage.memory import MemoryStore  # noqa: E402
from bizmarket.storage.redis_cache import RedisCache  # noqa: E402


class FrozenClock:
    """Controllable clock passed to services in place of datetime.now."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def fake_redis():
    return fake_aioredis.FakeRedis(decode_responses=True)


@pytest.fixture
def redis_cache(fake_redis):
    return RedisCache(client=fake_redis)


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
