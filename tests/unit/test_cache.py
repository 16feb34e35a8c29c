"""Tests for CacheService on both backends."""

import pytest
import redis.asyncio as redis

from constants import CacheType
from core.cache import CacheService, hash_text


@pytest.fixture(params=["memory", "redis"])
def any_cache(request, cache, redis_cache):
    return cache if request.param == "memory" else redis_cache


class TestGetSet:

    async def test_round_trip(self, any_cache):
        assert await any_cache.set("greeting", {"text": "hello", "n": 3}, ttl=60)
        assert await any_cache.get("greeting") == {"text": "hello", "n": 3}

    async def test_missing_key_returns_none(self, any_cache):
        assert await any_cache.get("missing") is None

    async def test_entry_expires_after_ttl(self, any_cache, clock):
        await any_cache.set("short", 1, ttl=10)
        clock.advance(9)
        assert await any_cache.get("short") == 1
        clock.advance(1)
        assert await any_cache.get("short") is None

    async def test_default_ttl_applies(self, cache, clock, settings):
        await cache.set("default", "value")
        clock.advance(settings.cache_default_ttl - 1)
        assert await cache.get("default") == "value"
        clock.advance(1)
        assert await cache.get("default") is None

    async def test_zero_ttl_stores_nothing(self, any_cache):
        await any_cache.set("k", 1, ttl=60)

        assert await any_cache.set("k", 2, ttl=0) is False
        assert await any_cache.get("k") is None

    async def test_helper_zero_ttl_is_not_replaced_by_default(self, any_cache):
        await any_cache.cache_dashboard_data("u1", "all", {"summary": {}}, ttl=0)
        await any_cache.cache_user_data("u1", "projects", [], ttl=0)

        assert await any_cache.get_cached_dashboard_data("u1", "all") is None
        assert await any_cache.get_cached_user_data("u1", "projects") is None

    async def test_expired_keys_purged_on_write(self, cache, clock):
        await cache.cache_job_status("analysis_e1_1", {"status": "completed"}, ttl=10)
        await cache.cache_extraction("Reviewed the deployment pipeline", {"skills": []})
        clock.advance(10)

        await cache.set("fresh", 1, ttl=60)

        assert "dev:job:analysis_e1_1" not in cache.memory_cache
        assert "dev:extraction:" + hash_text("Reviewed the deployment pipeline") in cache.memory_cache
        assert "dev:fresh" in cache.memory_cache

    async def test_keys_are_namespaced(self, cache):
        await cache.set("k", 1)
        assert "dev:k" in cache.memory_cache

    async def test_delete(self, any_cache):
        await any_cache.set("gone", 1)
        assert await any_cache.delete("gone") is True
        assert await any_cache.get("gone") is None
        assert await any_cache.delete("gone") is False

    async def test_unreadable_value_is_a_miss(self, cache):
        cache.memory_cache["dev:broken"] = ("{not json", None)
        assert await cache.get("broken") is None


class TestBackendFailures:

    async def test_operations_never_raise_when_redis_is_down(self, redis_cache, fake_redis):
        await redis_cache.set("k", 1)
        fake_redis.fail = True

        assert await redis_cache.get("k") is None
        assert await redis_cache.set("k", 2) is False
        assert await redis_cache.delete("k") is False
        assert await redis_cache.scan_and_delete("*") == 0
        assert await redis_cache.ping() is False

    async def test_startup_falls_back_to_memory(self, settings, fake_redis, monkeypatch):
        fake_redis.fail = True
        monkeypatch.setattr(redis, "from_url", lambda *args, **kwargs: fake_redis)
        settings = settings.model_copy(update={"redis_enabled": True,
                                               "redis_url": "redis://localhost:6379/0"})
        cache = CacheService(settings)
        await cache.startup()
        try:
            assert cache.is_redis_available() is False
            assert await cache.set("k", "v")
            assert await cache.get("k") == "v"
        finally:
            await cache.shutdown()


class TestNamespaces:

    async def test_environments_do_not_share_keys(self, settings, fake_redis):
        dev = CacheService(settings, client=fake_redis)
        prod = CacheService(settings.model_copy(update={"environment": "production"}), client=fake_redis)

        await dev.set("count:entry", 5)
        assert await prod.get("count:entry") is None

        await prod.set("count:entry", 7)
        assert await dev.get("count:entry") == 5

    async def test_global_counts_cleared_in_every_namespace(self, settings, fake_redis):
        dev = CacheService(settings, client=fake_redis)
        prod = CacheService(settings.model_copy(update={"environment": "production"}), client=fake_redis)
        await dev.cache_database_count("entry", 5)
        await prod.cache_database_count("entry", 7)
        await prod.cache_user_data("u1", "projects", [])

        assert await dev.invalidate_global_counts() == 2

        assert await dev.get_cached_database_count("entry") is None
        assert await prod.get_cached_database_count("entry") is None
        assert await prod.get_cached_user_data("u1", "projects") == []


class TestInvalidation:

    async def _populate(self, cache):
        await cache.cache_user_data("u1", "entries_recent", [1])
        await cache.cache_user_data("u1", "entries_2024-03-01", [2])
        await cache.cache_user_data("u1", "projects", [3])
        await cache.cache_dashboard_data("u1", "all", {"d": 1})
        await cache.cache_user_data("u2", "entries_recent", [4])
        await cache.cache_database_count("entry", 10)

    async def test_entries_family(self, any_cache):
        await self._populate(any_cache)

        deleted = await any_cache.invalidate_user_cache("u1", [CacheType.ENTRIES])

        assert deleted == 3
        assert await any_cache.get_cached_user_data("u1", "entries_recent") is None
        assert await any_cache.get_cached_user_data("u1", "entries_2024-03-01") is None
        assert await any_cache.get_cached_dashboard_data("u1", "all") is None
        assert await any_cache.get_cached_user_data("u1", "projects") == [3]
        assert await any_cache.get_cached_user_data("u2", "entries_recent") == [4]

    async def test_empty_types_clears_every_family(self, any_cache):
        await self._populate(any_cache)

        await any_cache.invalidate_user_cache("u1")

        assert await any_cache.get_cached_user_data("u1", "projects") is None
        assert await any_cache.get_cached_dashboard_data("u1", "all") is None
        assert await any_cache.get_cached_database_count("entry") is None
        assert await any_cache.get_cached_user_data("u2", "entries_recent") == [4]

    async def test_clear_user_cache(self, cache):
        await self._populate(cache)
        await cache.cache_insights("u1", "month", {"summary": "x"})

        assert await cache.clear_user_cache("u1") == 5
        assert await cache.get_cached_user_data("u2", "entries_recent") == [4]


class TestDomainHelpers:

    async def test_extraction_keyed_by_text_hash(self, cache):
        await cache.cache_extraction("Shipped the billing migration", {"sentiment": "positive"})

        assert f"dev:extraction:{hash_text('Shipped the billing migration')}" in cache.memory_cache
        assert await cache.get_cached_extraction("Shipped the billing migration") == {"sentiment": "positive"}
        assert await cache.get_cached_extraction("Something else") is None

    async def test_job_status_uses_given_ttl(self, cache, clock):
        await cache.cache_job_status("job-1", {"status": "pending"}, ttl=30)
        clock.advance(31)
        assert await cache.get_cached_job_status("job-1") is None

    async def test_cache_stats(self, settings, fake_redis):
        dev = CacheService(settings, client=fake_redis)
        prod = CacheService(settings.model_copy(update={"environment": "production"}), client=fake_redis)
        await dev.set("a", 1)
        await dev.set("b", 2)
        await prod.set("a", 3)

        stats = await dev.get_cache_stats()

        assert stats == {
            "environment": "test",
            "backend": "redis",
            "total_keys": 3,
            "dev_keys": 2,
            "prod_keys": 1,
            "current_env_keys": 2,
        }
