"""Analysis job state models.

All models are JSON-serializable so a job can be mirrored into the cache for
status polling.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional


class JobType(str, Enum):
    """Kinds of analysis work."""
    ENTRY_ANALYSIS = "entry_analysis"
    BATCH_ANALYSIS = "batch_analysis"


class JobStatus(str, Enum):
    """Job lifecycle.

    State transitions:
        PENDING -> PROCESSING -> COMPLETED
                              -> FAILED -> RETRY -> PENDING   (attempts < max_retries)
                              -> FAILED                       (terminal)
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"


class JobPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


@dataclass
class RetryPolicy:
    """Exponential backoff between job attempts.

    Delay formula: min(initial_delay * (backoff_multiplier ^ attempt), max_delay)
    """
    initial_delay: float = 1.0       # seconds
    max_delay: float = 60.0          # seconds
    backoff_multiplier: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before re-enqueueing after ``attempt`` attempts."""
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)


@dataclass
class JobOptions:
    priority: JobPriority = JobPriority.NORMAL
    max_retries: int = 2
    timeout_ms: int = 60000
    batch_size: int = 5
    force_refresh: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priority": self.priority.value,
            "max_retries": self.max_retries,
            "timeout_ms": self.timeout_ms,
            "batch_size": self.batch_size,
            "force_refresh": self.force_refresh,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobOptions":
        return cls(
            priority=JobPriority(data.get("priority", "normal")),
            max_retries=data.get("max_retries", 2),
            timeout_ms=data.get("timeout_ms", 60000),
            batch_size=data.get("batch_size", 5),
            force_refresh=data.get("force_refresh", False),
        )


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class AnalysisJob:
    """One unit of asynchronous analysis work.

    Owned by the job queue while in memory; ``to_dict`` is the shape written to
    the cache mirror.
    """
    id: str
    type: JobType
    options: JobOptions
    entry_id: Optional[str] = None
    entry_ids: List[str] = field(default_factory=list)
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    progress: Optional[Dict[str, int]] = None

    @classmethod
    def for_entry(cls, entry_id: str, options: JobOptions) -> "AnalysisJob":
        """Factory for a single-entry job."""
        return cls(
            id=_make_job_id(f"analysis_{entry_id}"),
            type=JobType.ENTRY_ANALYSIS,
            options=options,
            entry_id=entry_id,
        )

    @classmethod
    def for_batch(cls, entry_ids: List[str], options: JobOptions) -> "AnalysisJob":
        """Factory for a batch job with progress tracking."""
        return cls(
            id=_make_job_id("batch_analysis"),
            type=JobType.BATCH_ANALYSIS,
            options=options,
            entry_ids=list(entry_ids),
            progress={"completed": 0, "total": len(entry_ids)},
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.options.max_retries

    def mark_processing(self) -> None:
        self.status = JobStatus.PROCESSING
        self.started_at = datetime.now(timezone.utc)
        self.attempts += 1

    def mark_completed(self, result: Dict[str, Any]) -> None:
        self.status = JobStatus.COMPLETED
        self.completed_at = datetime.now(timezone.utc)
        self.result = result

    def mark_failed(self, error: str) -> None:
        self.status = JobStatus.FAILED
        self.failed_at = datetime.now(timezone.utc)
        self.last_error = error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "entry_id": self.entry_id,
            "entry_ids": self.entry_ids,
            "options": self.options.to_dict(),
            "attempts": self.attempts,
            "created_at": _isoformat(self.created_at),
            "started_at": _isoformat(self.started_at),
            "completed_at": _isoformat(self.completed_at),
            "failed_at": _isoformat(self.failed_at),
            "last_error": self.last_error,
            "result": self.result,
            "progress": self.progress,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisJob":
        """Create from dict (cache deserialization)."""
        return cls(
            id=data["id"],
            type=JobType(data["type"]),
            options=JobOptions.from_dict(data.get("options", {})),
            entry_id=data.get("entry_id"),
            entry_ids=data.get("entry_ids", []),
            status=JobStatus(data["status"]),
            attempts=data.get("attempts", 0),
            created_at=_parse(data.get("created_at")) or datetime.now(timezone.utc),
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
            failed_at=_parse(data.get("failed_at")),
            last_error=data.get("last_error"),
            result=data.get("result"),
            progress=data.get("progress"),
        )


def _make_job_id(prefix: str) -> str:
    """Time-derived id, suffixed so two jobs created in the same millisecond differ."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
