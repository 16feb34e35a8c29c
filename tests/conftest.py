"""
Shared test fixtures.

SQLite files under tmp_path stand in for Postgres; the cache runs either on
its in-memory backend or on ``InMemoryRedis``, both driven by a fake clock so
TTL expiry can be tested without sleeping.
"""

import fnmatch
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.cache import CacheService
from core.config import Settings
from core.database import Database
from services.analysis import AnalysisResult
from services.cached_database import CachedDatabase
from services.job_queue import AnalysisJobQueue


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryRedis:
    """The subset of ``redis.asyncio.Redis`` used by CacheService.

    Set ``fail = True`` to make every call raise like an unreachable server.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data = {}
        self.expiry = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    def _alive(self, key) -> bool:
        expires_at = self.expiry.get(key)
        if expires_at is not None and expires_at <= self.clock():
            self.data.pop(key, None)
            self.expiry.pop(key, None)
            return False
        return key in self.data

    async def get(self, key):
        self._check()
        return self.data[key] if self._alive(key) else None

    async def setex(self, key, ttl, value):
        self._check()
        self.data[key] = value
        self.expiry[key] = self.clock() + ttl
        return True

    async def delete(self, *keys):
        self._check()
        deleted = 0
        for key in keys:
            if self._alive(key):
                del self.data[key]
                self.expiry.pop(key, None)
                deleted += 1
        return deleted

    async def scan_iter(self, match=None, count=None):
        self._check()
        for key in list(self.data):
            if self._alive(key) and fnmatch.fnmatchcase(key, match or "*"):
                yield key

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        pass


@pytest.fixture
def settings(tmp_path):
    """Fast settings: zero retry delays, a huge poll interval, SQLite in tmp_path."""
    return Settings(
        _env_file=None,
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'worklog.db'}",
        redis_enabled=False,
        database_retry_delay=0,
        database_operation_retry_delay=0,
        database_connect_wait_interval=0.01,
        job_poll_interval=3600,
        job_retry_base_delay=0,
        job_batch_delay=0,
        anthropic_api_key=None,
        log_format="console",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return InMemoryRedis(clock)


@pytest.fixture
def cache(settings, clock):
    """Cache on the in-memory backend."""
    return CacheService(settings, clock=clock)


@pytest.fixture
def redis_cache(settings, fake_redis):
    """Cache on the (fake) Redis backend."""
    return CacheService(settings, client=fake_redis)


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def cached_db(database, cache, settings):
    return CachedDatabase(database, cache, settings)


@pytest.fixture
async def user(database):
    return await database.create("user", {
        "email": "ada@example.com",
        "name": "Ada",
        "provider": "google",
        "provider_id": "google-ada",
        "job_title": "Staff Engineer",
    })


@pytest.fixture
def analysis():
    """Analysis collaborator that succeeds unless a test says otherwise."""
    service = MagicMock()
    service.analyze_entry = AsyncMock(
        return_value=AnalysisResult(success=True, data={"sentiment": "positive"})
    )
    return service


@pytest.fixture
async def job_queue(analysis, cache, settings):
    queue = AnalysisJobQueue(analysis, cache, settings)
    yield queue
    await queue.shutdown()
