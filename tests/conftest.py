import asyncio
import inspect
import os
import sys
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set before any harbinger import reads the environment
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from harbinger.app import create_app  # noqa: E402
from harbinger.config import Settings, reset_settings_cache  # noqa: E402
from harbinger.service.auth import SessionLifecycle  # noqa: E402
from harbinger.service.profile import ProfileCache  # noqa: E402
from harbinger.service.runtime import Runtime  # noqa: E402
from harbinger.service.tokens import TokenCodec  # noqa: E402
from harbinger.storage.memory import MemoryStore  # noqa: E402
from harbinger.storage.redis_cache import MemoryRedisClient, RedisCache  # noqa: E402

SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"
EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Shared manual clock for the token codec and the in-memory Redis."""

    def __init__(self, start: datetime = EPOCH):
        self.start = start
        self.offset = 0.0

    def advance(self, seconds: float) -> None:
        self.offset += seconds

    def monotonic(self) -> float:
        return 1_000.0 + self.offset

    def utcnow(self) -> datetime:
        return self.start + timedelta(seconds=self.offset)


class FlakyRedis(MemoryRedisClient):
    """In-memory Redis with switchable failures for outage tests."""

    def __init__(self, clock=None):
        super().__init__(clock=clock)
        self.fail_ops = set()
        self.hang_ops = set()
        self.fail_delete_after = None
        self.scan_gate = None
        self.scan_delay = 0.0
        self.calls = Counter()

    async def _check(self, op):
        self.calls[op] += 1
        if op in self.hang_ops:
            await asyncio.sleep(3600)
        if op in self.fail_ops:
            raise RedisConnectionError(f"{op} refused")

    async def ping(self):
        await self._check("ping")
        return await super().ping()

    async def get(self, key):
        await self._check("get")
        return await super().get(key)

    async def set(self, key, value, ex=None, nx=False):
        await self._check("set")
        return await super().set(key, value, ex=ex, nx=nx)

    async def exists(self, *keys):
        await self._check("exists")
        return await super().exists(*keys)

    async def delete(self, *keys):
        await self._check("delete")
        if self.fail_delete_after is not None and self.calls["delete"] > self.fail_delete_after:
            raise RedisConnectionError("delete refused")
        return await super().delete(*keys)

    async def scan(self, cursor=0, match=None, count=None):
        await self._check("scan")
        if self.scan_gate is not None:
            await self.scan_gate.wait()
        if self.scan_delay:
            await asyncio.sleep(self.scan_delay)
        return await super().scan(cursor=cursor, match=match, count=count)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client(clock):
    return FlakyRedis(clock=clock.monotonic)


@pytest.fixture
def cache(redis_client):
    return RedisCache(client=redis_client, operation_timeout=1.0, scan_count=2)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def codec(clock):
    return TokenCodec(clock=clock.utcnow)


@pytest.fixture
def fast_hasher():
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def lifecycle(store, cache, codec, fast_hasher):
    return SessionLifecycle(store, cache, codec, SECRET, password_hasher=fast_hasher)


@pytest.fixture
def profiles(store, cache):
    return ProfileCache(store, cache, ttl_seconds=300)


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET, use_memory_store=True, test_mode=True)


@pytest.fixture
def runtime(settings, store, cache, codec):
    return Runtime(settings, store=store, cache=cache, codec=codec)


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime))


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
