"""Centralized constants for cache key families and invalidation sets.

The cache types each write path invalidates are enumerated here, next to the
key families the read paths populate, so both sides can be compared in one
place.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Tuple


class CacheType(str, Enum):
    """Invalidation tags accepted by the cached-access layer."""
    ENTRIES = "entries"
    PROJECTS = "projects"
    COUNTS = "counts"


class OperationClass(str, Enum):
    """Deadline class for a backing-store operation."""
    SHORT = "short"      # point reads / writes
    MEDIUM = "medium"    # dashboard aggregates
    LONG = "long"        # export / document generation


# =============================================================================
# CACHE KEY FAMILIES (logical keys, before the environment prefix)
# =============================================================================

KEY_EXTRACTION = "extraction:{text_hash}"
KEY_INSIGHTS = "insights:{user_id}:{period}"
KEY_GLOBAL_COUNT = "count:{model}"
KEY_USER_DATA = "user:{user_id}:{suffix}"
KEY_DASHBOARD = "dashboard:{user_id}:{timeframe}"
KEY_JOB = "job:{job_id}"

# Suffixes used under KEY_USER_DATA
USER_COUNT_SUFFIX = "count_{model}"
ENTRIES_FOR_DATE_SUFFIX = "entries_{date}"
ENTRIES_RECENT_SUFFIX = "entries_recent"
PROJECTS_SUFFIX = "projects"

ENVIRONMENT_NAMESPACES: Tuple[str, ...] = ("dev:", "prod:")

# Patterns (relative to the current namespace) removed per cache type.
INVALIDATION_PATTERNS: Dict[CacheType, Tuple[str, ...]] = {
    CacheType.ENTRIES: ("user:{user_id}:entries*", "dashboard:{user_id}:*"),
    CacheType.PROJECTS: ("user:{user_id}:projects*",),
    CacheType.COUNTS: ("count:*",),
}

# =============================================================================
# WRITE PATHS -> CACHE TYPES THEY INVALIDATE
# =============================================================================

ENTRY_CREATE_INVALIDATES: List[CacheType] = [CacheType.ENTRIES, CacheType.COUNTS]
ENTRY_UPDATE_INVALIDATES: List[CacheType] = [CacheType.ENTRIES]
ENTRY_DELETE_INVALIDATES: List[CacheType] = [CacheType.ENTRIES, CacheType.COUNTS]
ANALYSIS_ENTRY_INVALIDATES: List[CacheType] = [CacheType.ENTRIES]
ANALYSIS_ENTITIES_INVALIDATES: List[CacheType] = [CacheType.PROJECTS, CacheType.ENTRIES]
PROJECT_CREATE_INVALIDATES: List[CacheType] = [CacheType.PROJECTS, CacheType.ENTRIES, CacheType.COUNTS]
PROJECT_UPDATE_INVALIDATES: List[CacheType] = [CacheType.PROJECTS, CacheType.ENTRIES]
PROJECT_DELETE_INVALIDATES: List[CacheType] = [CacheType.PROJECTS, CacheType.ENTRIES, CacheType.COUNTS]

# Models whose per-user counts the dashboard surfaces
COUNTED_MODELS: FrozenSet[str] = frozenset(["entry", "project", "skill", "competency"])

# =============================================================================
# ANALYSIS
# =============================================================================

SENTIMENTS: FrozenSet[str] = frozenset(["positive", "neutral", "negative", "mixed"])
TIMEFRAMES: FrozenSet[str] = frozenset(["week", "month", "quarter", "year", "all"])

# =============================================================================
# PROJECTS
# =============================================================================

PROJECT_STATUSES: FrozenSet[str] = frozenset(["active", "completed", "archived"])
PROJECT_NAME_MAX_LENGTH = 100
