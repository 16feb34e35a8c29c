"""Dependency injection container for the application.

Every core component is a Singleton: one connection manager, one cache, one
job queue per process, constructed here and handed to whoever needs them.
"""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.cached_database import CachedDatabase
from services.analysis import AnalysisService, EntryExtractor
from services.job_queue import AnalysisJobQueue


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Backing store connection manager
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Cache service (Redis when enabled, in-memory otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    # Read-through / write-through layer
    cached_database = providers.Singleton(
        CachedDatabase,
        database=database,
        cache=cache,
        settings=settings
    )

    # LLM collaborator
    extractor = providers.Singleton(
        EntryExtractor,
        settings=settings
    )

    analysis_service = providers.Singleton(
        AnalysisService,
        cached_database=cached_database,
        cache=cache,
        settings=settings,
        extractor=extractor
    )

    job_queue = providers.Singleton(
        AnalysisJobQueue,
        analysis_service=analysis_service,
        cache=cache,
        settings=settings
    )


# Global container instance
container = Container()
