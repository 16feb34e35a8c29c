"""Health check utilities for the /api/health endpoint.

Provides uptime tracking and an aggregate of store, cache and queue health.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

import psutil

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from core.cache import CacheService
    from services.job_queue import AnalysisJobQueue

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the application startup time. Call once during lifespan startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


def get_memory_mb() -> float:
    """Get current process memory usage in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


async def get_health_status(
    database: "Database",
    cache: "CacheService",
    job_queue: "AnalysisJobQueue",
    settings: "Settings"
) -> Dict[str, Any]:
    """Get health status for /api/health.

    The database probe is memoized by ``Database.health_check``, so frequent
    polling does not hit the store.
    """
    db_health = await database.health_check()
    cache_healthy = await cache.ping()

    overall_status = "healthy" if (db_health["status"] == "healthy" and cache_healthy) else "degraded"

    return {
        "status": overall_status,
        "environment": settings.environment,
        "uptime_seconds": round(get_uptime(), 1),
        "memory_mb": round(get_memory_mb(), 1),
        "checks": {
            "database": db_health,
            "cache": {
                "healthy": cache_healthy,
                "backend": "redis" if cache.is_redis_available() else "memory",
            },
        },
        "queue": job_queue.get_queue_stats(),
    }
