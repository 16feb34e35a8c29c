"""Cache service with Redis (production) or in-process memory (development) backend.

All keys are prefixed with the environment namespace (``dev:`` / ``prod:``)
so a single Redis database can serve both environments. The cache is advisory:
every backend failure is logged and swallowed, and callers fall back to the
backing store.
"""

import fnmatch
import hashlib
import json
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as redis

from constants import (
    CacheType,
    ENVIRONMENT_NAMESPACES,
    INVALIDATION_PATTERNS,
    KEY_DASHBOARD,
    KEY_EXTRACTION,
    KEY_GLOBAL_COUNT,
    KEY_INSIGHTS,
    KEY_JOB,
    KEY_USER_DATA,
)
from core.config import Settings
from core.exceptions import CacheUnavailable
from core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)


def hash_text(text: str) -> str:
    """MD5 of entry text, used to key extraction results."""
    return hashlib.md5(text.encode("utf-8")).hexdigest()


class CacheService:
    """Async TTL key-value cache.

    Backend selection:
    - Redis: when REDIS_ENABLED=true and REDIS_URL is set (or a client is injected)
    - Memory: otherwise, or if Redis is unreachable at startup
    """

    def __init__(self, settings: Settings, client: Optional[redis.Redis] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.namespace = settings.cache_namespace
        self.redis: Optional[redis.Redis] = client
        self.use_redis = client is not None or (settings.redis_enabled and bool(settings.redis_url))
        # key -> (serialized value, expires_at on self._clock)
        self.memory_cache: Dict[str, Tuple[str, Optional[float]]] = {}
        self._clock = clock

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis and self.redis is None:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis cache initialized", namespace=self.namespace)
            except Exception as e:
                logger.warning("Redis connection failed, falling back to memory cache", error=str(e))
                self.use_redis = False
                self.redis = None
        elif not self.use_redis:
            logger.info("Using in-memory cache", namespace=self.namespace,
                        redis_enabled=self.settings.redis_enabled)

    async def shutdown(self):
        """Close cache connections."""
        if self.redis is not None:
            await self.redis.aclose()
            logger.info("Redis cache connections closed")
        self.memory_cache.clear()

    def make_key(self, key: str) -> str:
        """Prefix a logical key with the environment namespace."""
        return f"{self.namespace}{key}"

    def is_redis_available(self) -> bool:
        return self.use_redis and self.redis is not None

    def _report(self, error: CacheUnavailable) -> None:
        logger.error("Cache unavailable", operation=error.operation,
                     key=error.key, error=str(error.cause))

    # ============================================================================
    # Backend primitives (operate on fully-qualified keys)
    # ============================================================================

    async def _raw_get(self, full_key: str) -> Optional[str]:
        if self.is_redis_available():
            return await self.redis.get(full_key)

        item = self.memory_cache.get(full_key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self.memory_cache[full_key]
            return None
        return value

    async def _raw_set(self, full_key: str, value: str, ttl: int) -> None:
        if self.is_redis_available():
            await self.redis.setex(full_key, ttl, value)
        else:
            now = self._clock()
            self._purge_expired(now)
            self.memory_cache[full_key] = (value, now + ttl)

    def _purge_expired(self, now: float) -> int:
        """Drop expired memory entries, including keys that are never read again."""
        expired = [
            key for key, (_, expires_at) in self.memory_cache.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self.memory_cache[key]
        return len(expired)

    async def _raw_delete(self, full_keys: List[str]) -> int:
        if not full_keys:
            return 0
        if self.is_redis_available():
            return await self.redis.delete(*full_keys)

        deleted = 0
        for full_key in full_keys:
            if self.memory_cache.pop(full_key, None) is not None:
                deleted += 1
        return deleted

    async def _raw_scan(self, full_pattern: str) -> List[str]:
        if self.is_redis_available():
            return [key async for key in self.redis.scan_iter(match=full_pattern, count=500)]

        now = self._clock()
        return [
            key for key, (_, expires_at) in list(self.memory_cache.items())
            if fnmatch.fnmatchcase(key, full_pattern) and (expires_at is None or expires_at > now)
        ]

    # ============================================================================
    # Public API (logical keys)
    # ============================================================================

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache. Missing, expired or unreadable entries return None."""
        full_key = self.make_key(key)
        try:
            raw = await self._raw_get(full_key)
            if raw is None:
                log_cache_operation(logger, "get", full_key, hit=False)
                return None
            log_cache_operation(logger, "get", full_key, hit=True)
            return json.loads(raw)
        except Exception as e:
            self._report(CacheUnavailable("get", full_key, e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache with TTL in seconds."""
        full_key = self.make_key(key)
        if ttl is None:
            ttl = self.settings.cache_default_ttl
        if ttl <= 0:
            # A non-positive TTL stores nothing and drops any previous value
            await self.delete(key)
            return False
        try:
            await self._raw_set(full_key, json.dumps(value, default=str), ttl)
            log_cache_operation(logger, "set", full_key, ttl=ttl)
            return True
        except Exception as e:
            self._report(CacheUnavailable("set", full_key, e))
            return False

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        full_key = self.make_key(key)
        try:
            deleted = await self._raw_delete([full_key])
            log_cache_operation(logger, "delete", full_key, deleted=bool(deleted))
            return bool(deleted)
        except Exception as e:
            self._report(CacheUnavailable("delete", full_key, e))
            return False

    async def scan_and_delete(self, pattern: str, all_namespaces: bool = False) -> int:
        """Delete keys matching a glob pattern.

        With ``all_namespaces`` the pattern is applied under every environment
        prefix instead of only the current one.
        """
        namespaces: Iterable[str] = ENVIRONMENT_NAMESPACES if all_namespaces else (self.namespace,)
        total = 0
        for namespace in namespaces:
            full_pattern = f"{namespace}{pattern}"
            try:
                keys = await self._raw_scan(full_pattern)
                deleted = await self._raw_delete(keys)
                log_cache_operation(logger, "scan_and_delete", full_pattern, deleted=deleted)
                total += deleted
            except Exception as e:
                self._report(CacheUnavailable("scan_and_delete", full_pattern, e))
        return total

    async def ping(self) -> bool:
        """Check cache connectivity."""
        if not self.is_redis_available():
            return True
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            self._report(CacheUnavailable("ping", "-", e))
            return False

    # ============================================================================
    # Extraction / insights
    # ============================================================================

    async def cache_extraction(self, entry_text: str, result: Dict[str, Any]) -> bool:
        """Cache an LLM extraction keyed by the entry text."""
        key = KEY_EXTRACTION.format(text_hash=hash_text(entry_text))
        return await self.set(key, result, self.settings.cache_extraction_ttl)

    async def get_cached_extraction(self, entry_text: str) -> Optional[Dict[str, Any]]:
        return await self.get(KEY_EXTRACTION.format(text_hash=hash_text(entry_text)))

    async def cache_insights(self, user_id: str, period: str, insights: Dict[str, Any]) -> bool:
        key = KEY_INSIGHTS.format(user_id=user_id, period=period)
        return await self.set(key, insights, self.settings.cache_insights_ttl)

    async def get_cached_insights(self, user_id: str, period: str) -> Optional[Dict[str, Any]]:
        return await self.get(KEY_INSIGHTS.format(user_id=user_id, period=period))

    # ============================================================================
    # Counts / user data / dashboards
    # ============================================================================

    async def cache_database_count(self, model: str, count: int, ttl: Optional[int] = None) -> bool:
        key = KEY_GLOBAL_COUNT.format(model=model)
        return await self.set(key, count, self.settings.cache_count_ttl if ttl is None else ttl)

    async def get_cached_database_count(self, model: str) -> Optional[int]:
        cached = await self.get(KEY_GLOBAL_COUNT.format(model=model))
        return int(cached) if cached is not None else None

    async def cache_user_data(self, user_id: str, suffix: str, data: Any,
                              ttl: Optional[int] = None) -> bool:
        key = KEY_USER_DATA.format(user_id=user_id, suffix=suffix)
        return await self.set(key, data, self.settings.cache_user_data_ttl if ttl is None else ttl)

    async def get_cached_user_data(self, user_id: str, suffix: str) -> Optional[Any]:
        return await self.get(KEY_USER_DATA.format(user_id=user_id, suffix=suffix))

    async def cache_dashboard_data(self, user_id: str, timeframe: str, data: Dict[str, Any],
                                   ttl: Optional[int] = None) -> bool:
        key = KEY_DASHBOARD.format(user_id=user_id, timeframe=timeframe)
        return await self.set(key, data, self.settings.cache_dashboard_ttl if ttl is None else ttl)

    async def get_cached_dashboard_data(self, user_id: str, timeframe: str) -> Optional[Dict[str, Any]]:
        return await self.get(KEY_DASHBOARD.format(user_id=user_id, timeframe=timeframe))

    # ============================================================================
    # Job status mirror
    # ============================================================================

    async def cache_job_status(self, job_id: str, data: Dict[str, Any], ttl: int) -> bool:
        return await self.set(KEY_JOB.format(job_id=job_id), data, ttl)

    async def get_cached_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        return await self.get(KEY_JOB.format(job_id=job_id))

    # ============================================================================
    # Invalidation
    # ============================================================================

    async def invalidate_user_cache(self, user_id: str, types: Iterable[CacheType] = ()) -> int:
        """Clear cache families for a user. An empty ``types`` clears every family.

        Patterns are removed one after another; a concurrent reader can observe
        some families cleared and others not yet.
        """
        selected = [CacheType(t) for t in types] or list(CacheType)
        deleted = 0
        for cache_type in selected:
            for pattern in INVALIDATION_PATTERNS[cache_type]:
                deleted += await self.scan_and_delete(pattern.format(user_id=user_id))
        logger.info("Invalidated user cache", user_id=user_id,
                    types=[t.value for t in selected], deleted=deleted)
        return deleted

    async def invalidate_global_counts(self) -> int:
        """Clear global per-model counts in every environment namespace."""
        return await self.scan_and_delete(KEY_GLOBAL_COUNT.format(model="*"), all_namespaces=True)

    async def clear_user_cache(self, user_id: str) -> int:
        """Clear every key belonging to a user (account deletion)."""
        return await self.scan_and_delete(f"*:{user_id}:*")

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Key counts per environment namespace."""
        counts = {}
        for namespace in ENVIRONMENT_NAMESPACES:
            try:
                counts[namespace.rstrip(":")] = len(await self._raw_scan(f"{namespace}*"))
            except Exception as e:
                self._report(CacheUnavailable("stats", f"{namespace}*", e))
                counts[namespace.rstrip(":")] = 0
        return {
            "environment": self.settings.environment,
            "backend": "redis" if self.is_redis_available() else "memory",
            "total_keys": sum(counts.values()),
            "dev_keys": counts["dev"],
            "prod_keys": counts["prod"],
            "current_env_keys": counts[self.namespace.rstrip(":")],
        }
