"""Service health routes."""

from fastapi import APIRouter, Depends

from core.cache import CacheService
from core.container import container
from core.health import get_health_status
from routers.entries import get_job_queue
from services.job_queue import AnalysisJobQueue

router = APIRouter(prefix="/api/health", tags=["health"])


def get_cache() -> CacheService:
    return container.cache()


@router.get("")
async def health(
    cache: CacheService = Depends(get_cache),
    job_queue: AnalysisJobQueue = Depends(get_job_queue)
):
    """Store, cache and queue health."""
    return await get_health_status(container.database(), cache, job_queue, container.settings())


@router.get("/cache")
async def cache_stats(cache: CacheService = Depends(get_cache)):
    """Key counts per environment namespace."""
    return await cache.get_cache_stats()
