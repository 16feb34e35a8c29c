"""Read-through caching and write-through invalidation over the store.

Reads consult the cache first and fall back to the store (or a caller-supplied
loader) on miss. Writes go to the store first, then clear the cache families
named by the caller. There is no versioning: a write path that forgets a cache
type serves stale data until TTL expiry.
"""

import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from constants import (
    CacheType,
    ENTRIES_FOR_DATE_SUFFIX,
    ENTRIES_RECENT_SUFFIX,
    OperationClass,
    PROJECTS_SUFFIX,
    USER_COUNT_SUFFIX,
)
from core.cache import CacheService
from core.config import Settings
from core.database import Database, Operation
from core.logging import get_logger, log_execution_time

logger = get_logger(__name__)

Loader = Callable[[], Awaitable[Any]]


class CachedDatabase:
    """High-level store access used by routes and the analysis service."""

    def __init__(self, database: Database, cache: CacheService, settings: Settings):
        self.database = database
        self.cache = cache
        self.settings = settings

    async def _load(self, operation: str, pending: Awaitable[Any], **context) -> Any:
        start_time = time.perf_counter()
        result = await pending
        log_execution_time(logger, operation, start_time, time.perf_counter(), **context)
        return result

    # ============================================================================
    # Read-through
    # ============================================================================

    async def get_cached_count(self, model: str, where: Optional[Dict[str, Any]] = None,
                               ttl: Optional[int] = None) -> int:
        """Count records, caching global and per-user counts.

        An empty filter uses the global ``count:<model>`` key; a filter on
        ``user_id`` alone uses ``user:<id>:count_<model>``; any other filter
        shape goes straight to the store.
        """
        where = where or {}
        ttl = self.settings.cache_count_ttl if ttl is None else ttl

        if not where:
            cached = await self.cache.get_cached_database_count(model)
            if cached is not None:
                return cached
            count = await self._load(f"count {model}", self.database.count(model), model=model)
            await self.cache.cache_database_count(model, count, ttl)
            return count

        user_id = where.get("user_id")
        if user_id and set(where) == {"user_id"}:
            suffix = USER_COUNT_SUFFIX.format(model=model)
            cached = await self.cache.get_cached_user_data(user_id, suffix)
            if cached is not None:
                return int(cached)
            count = await self._load(f"count {model}", self.database.count(model, where),
                                     model=model, user_id=user_id)
            await self.cache.cache_user_data(user_id, suffix, count, ttl)
            return count

        return await self.database.count(model, where)

    async def get_cached_user_data(self, model: str, params: Dict[str, Any], cache_key_suffix: str,
                                   ttl: Optional[int] = None) -> List[Dict[str, Any]]:
        """``find_many`` cached under ``user:<id>:<suffix>``; needs ``params["where"]["user_id"]``."""
        user_id = (params.get("where") or {}).get("user_id")
        if not user_id:
            return await self.database.find_many(model, **params)

        cached = await self.cache.get_cached_user_data(user_id, cache_key_suffix)
        if cached is not None:
            return cached

        results = await self._load(f"findMany {model}", self.database.find_many(model, **params),
                                   user_id=user_id, cache_key=cache_key_suffix)
        await self.cache.cache_user_data(user_id, cache_key_suffix, results,
                                         self.settings.cache_user_data_ttl if ttl is None else ttl)
        return results

    async def get_cached_user_projects(self, user_id: str) -> List[Dict[str, Any]]:
        """The user's projects ordered by name, in the slot project writes invalidate."""
        return await self.get_cached_user_data(
            "project", {"where": {"user_id": user_id}, "order_by": "name"}, PROJECTS_SUFFIX
        )

    async def get_cached_dashboard_data(self, user_id: str, timeframe: str, loader: Loader,
                                        ttl: Optional[int] = None) -> Dict[str, Any]:
        """One aggregate slot per (user, timeframe); ``loader`` runs on miss."""
        cached = await self.cache.get_cached_dashboard_data(user_id, timeframe)
        if cached is not None:
            return cached

        data = await self._load("dashboard", loader(), user_id=user_id, timeframe=timeframe)
        await self.cache.cache_dashboard_data(user_id, timeframe, data,
                                              self.settings.cache_dashboard_ttl if ttl is None else ttl)
        return data

    async def get_cached_user_entries(self, user_id: str, date: Optional[str], loader: Loader,
                                      ttl: Optional[int] = None) -> List[Dict[str, Any]]:
        """Entries for one date, or the recent-entries list when ``date`` is None."""
        suffix = ENTRIES_FOR_DATE_SUFFIX.format(date=date) if date else ENTRIES_RECENT_SUFFIX
        cached = await self.cache.get_cached_user_data(user_id, suffix)
        if cached is not None:
            return cached

        entries = await self._load("entries", loader(), user_id=user_id, cache_key=suffix)
        await self.cache.cache_user_data(user_id, suffix, entries,
                                         self.settings.cache_entries_ttl if ttl is None else ttl)
        return entries

    # ============================================================================
    # Write-through invalidation
    # ============================================================================

    async def invalidate(self, user_id: Optional[str], cache_types: Iterable[CacheType]) -> None:
        """Clear cache families after a write. Failures are logged, never raised."""
        cache_types = [CacheType(t) for t in cache_types]
        try:
            if user_id:
                await self.cache.invalidate_user_cache(user_id, cache_types)
            if CacheType.COUNTS in cache_types:
                deleted = await self.cache.invalidate_global_counts()
                logger.info("Invalidated global counts", deleted=deleted)
        except Exception as e:
            logger.error("Cache invalidation failed", user_id=user_id,
                         types=[t.value for t in cache_types], error=str(e))

    async def create_and_invalidate_cache(self, model: str, data: Dict[str, Any],
                                          cache_types: Iterable[CacheType] = ()) -> Dict[str, Any]:
        record = await self.database.create(model, data)
        await self.invalidate(data.get("user_id") or record.get("user_id"), cache_types)
        return record

    async def update_and_invalidate_cache(self, model: str, where: Dict[str, Any], data: Dict[str, Any],
                                          cache_types: Iterable[CacheType] = ()) -> Dict[str, Any]:
        record = await self.database.update(model, where, data)
        user_id = where.get("user_id") or data.get("user_id") or record.get("user_id")
        await self.invalidate(user_id, cache_types)
        return record

    async def delete_and_invalidate_cache(self, model: str, where: Dict[str, Any],
                                          cache_types: Iterable[CacheType] = ()) -> Dict[str, Any]:
        record = await self.database.delete(model, where)
        await self.invalidate(where.get("user_id") or record.get("user_id"), cache_types)
        return record

    # ============================================================================
    # Pass-through (uncached)
    # ============================================================================

    async def execute(self, operation: Operation, label: str,
                      op_class: OperationClass = OperationClass.SHORT) -> Any:
        return await self.database.execute(operation, label, op_class)

    async def find_unique(self, model: str, where: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self.database.find_unique(model, where)

    async def find_many(self, model: str, **params) -> List[Dict[str, Any]]:
        return await self.database.find_many(model, **params)

    async def upsert(self, model: str, where: Dict[str, Any], create: Dict[str, Any],
                     update: Dict[str, Any]) -> Dict[str, Any]:
        return await self.database.upsert(model, where, create, update)

    async def delete(self, model: str, where: Dict[str, Any]) -> Dict[str, Any]:
        return await self.database.delete(model, where)

    async def health_check(self) -> Dict[str, Any]:
        return await self.database.health_check()
