"""In-process analysis job queue.

Jobs wait in a deque; a single background task polls it every
``job_poll_interval`` seconds and runs at most one job at a time. The
``_processing`` flag is the only mutual exclusion: it is sufficient because
every mutation happens on one asyncio event loop. Under threads it would need
a real lock or a single-consumer channel.

Job status is mirrored into the cache after every transition; status polling
reads only the mirror.
"""

import asyncio
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

from core.cache import CacheService
from core.config import Settings
from core.exceptions import JobExecutionError
from core.logging import get_logger, job_log_context, log_job_transition
from models.jobs import AnalysisJob, JobOptions, JobPriority, JobStatus, JobType, RetryPolicy
from services.analysis import AnalysisService

logger = get_logger(__name__)

STATUS_FIELDS = (
    "id", "type", "status", "progress", "created_at", "started_at",
    "completed_at", "failed_at", "attempts", "last_error", "result",
)


class AnalysisJobQueue:
    """Priority FIFO of analysis jobs with retry and exponential backoff.

    State machine per job:
        pending -> processing -> completed
                              -> failed -> retry -> pending (front of queue)
                              -> failed (terminal once attempts == max_retries)
    """

    def __init__(self, analysis_service: AnalysisService, cache: CacheService, settings: Settings):
        self.analysis = analysis_service
        self.cache = cache
        self.settings = settings
        self.queue: Deque[AnalysisJob] = deque()
        self.retry_policy = RetryPolicy(
            initial_delay=settings.job_retry_base_delay,
            max_delay=settings.job_retry_max_delay,
        )
        self._processing = False
        self._started = False
        self._task: Optional[asyncio.Task] = None
        self._retry_tasks: Set[asyncio.Task] = set()

    # ============================================================================
    # Enqueue
    # ============================================================================

    async def add_analysis_job(self, entry_id: str, priority: str = "normal",
                               max_retries: Optional[int] = None,
                               timeout_ms: Optional[int] = None,
                               force_refresh: bool = False) -> str:
        """Queue analysis of one entry and return the job id."""
        self.ensure_started()

        options = JobOptions(
            priority=JobPriority(priority),
            max_retries=self.settings.job_default_retries if max_retries is None else max_retries,
            timeout_ms=self.settings.job_default_timeout_ms if timeout_ms is None else timeout_ms,
            batch_size=self.settings.job_default_batch_size,
            force_refresh=force_refresh,
        )
        job = AnalysisJob.for_entry(entry_id, options)
        self._enqueue(job)
        await self._mirror(job)
        return job.id

    async def add_batch_analysis_job(self, entry_ids: List[str], batch_size: Optional[int] = None,
                                     priority: str = "normal", max_retries: Optional[int] = None,
                                     force_refresh: bool = False) -> str:
        """Queue analysis of several entries, processed in chunks of ``batch_size``."""
        self.ensure_started()

        options = JobOptions(
            priority=JobPriority(priority),
            max_retries=self.settings.job_batch_default_retries if max_retries is None else max_retries,
            timeout_ms=self.settings.job_default_timeout_ms,
            batch_size=self.settings.job_default_batch_size if batch_size is None else batch_size,
            force_refresh=force_refresh,
        )
        job = AnalysisJob.for_batch(entry_ids, options)
        self._enqueue(job)
        await self._mirror(job)
        return job.id

    def _enqueue(self, job: AnalysisJob) -> None:
        if job.options.priority == JobPriority.HIGH:
            self.queue.appendleft(job)
        else:
            self.queue.append(job)
        logger.info("Job queued", job_id=job.id, type=job.type.value,
                    priority=job.options.priority.value, queue_length=len(self.queue))

    async def _mirror(self, job: AnalysisJob) -> None:
        ttl = self.settings.job_batch_status_ttl if job.type == JobType.BATCH_ANALYSIS \
            else self.settings.job_status_ttl
        await self.cache.cache_job_status(job.id, job.to_dict(), ttl)

    # ============================================================================
    # Processing loop
    # ============================================================================

    def ensure_started(self) -> None:
        """Start the polling loop on first use."""
        if not self._started:
            self.start_processing()
            self._started = True

    def start_processing(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._processing_loop())
        logger.info("Job queue processing started", poll_interval=self.settings.job_poll_interval)

    def stop_processing(self) -> None:
        """Stop polling. A job already processing runs to completion."""
        task, self._task = self._task, None
        if task is not None:
            if not self._processing:
                task.cancel()
            logger.info("Job queue processing stopped")

    async def _processing_loop(self) -> None:
        # Exits once stop_processing or a restart replaces self._task
        while self._task is asyncio.current_task():
            await asyncio.sleep(self.settings.job_poll_interval)
            if self._task is not asyncio.current_task():
                break
            if not self._processing and self.queue:
                try:
                    await self.process_next_job()
                except Exception as e:
                    logger.error("Job processing tick failed", error=str(e))

    async def process_next_job(self) -> Optional[AnalysisJob]:
        """Pop the head job and run it to completion, failure or retry."""
        if self._processing or not self.queue:
            return None

        self._processing = True
        job = self.queue.popleft()
        try:
            with job_log_context(job.id, job.type.value):
                return await self._run_job(job)
        finally:
            self._processing = False

    async def _run_job(self, job: AnalysisJob) -> AnalysisJob:
        previous = job.status.value
        job.mark_processing()
        log_job_transition(logger, job.id, previous, job.status.value, attempts=job.attempts)
        await self._mirror(job)

        try:
            if job.type == JobType.ENTRY_ANALYSIS:
                result = await self._process_entry_analysis(job)
            else:
                result = await self._process_batch_analysis(job)
            job.mark_completed(result)
            log_job_transition(logger, job.id, JobStatus.PROCESSING.value, job.status.value)

        except Exception as e:
            job.mark_failed(str(e) or type(e).__name__)
            log_job_transition(logger, job.id, JobStatus.PROCESSING.value, job.status.value,
                               error=job.last_error, attempts=job.attempts)
            if job.can_retry:
                job.status = JobStatus.RETRY
                self._schedule_retry(job)

        await self._mirror(job)
        return job

    async def _process_entry_analysis(self, job: AnalysisJob) -> Dict[str, Any]:
        timeout = job.options.timeout_ms / 1000
        try:
            result = await asyncio.wait_for(
                self.analysis.analyze_entry(job.entry_id, force_refresh=job.options.force_refresh),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise JobExecutionError(f"Analysis timed out after {timeout:g} seconds") from e

        if not result.success:
            raise JobExecutionError(result.error or "Analysis failed")

        return {
            "entry_id": job.entry_id,
            "extracted_data": result.data,
            "usage": result.usage,
            "cached": result.cached,
        }

    async def _process_batch_analysis(self, job: AnalysisJob) -> Dict[str, Any]:
        """Analyze entries chunk by chunk; one failing entry does not abort the batch."""
        entry_ids = job.entry_ids
        batch_size = max(1, job.options.batch_size)
        results: List[Dict[str, Any]] = []

        for start in range(0, len(entry_ids), batch_size):
            chunk = entry_ids[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(self.analysis.analyze_entry(entry_id, force_refresh=job.options.force_refresh)
                  for entry_id in chunk),
                return_exceptions=True,
            )

            for entry_id, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    results.append({"entry_id": entry_id, "status": "failed", "error": str(outcome)})
                elif not outcome.success:
                    results.append({"entry_id": entry_id, "status": "failed", "error": outcome.error})
                else:
                    results.append({"entry_id": entry_id, "status": "succeeded", "cached": outcome.cached})

            job.progress["completed"] = min(start + batch_size, len(entry_ids))
            await self._mirror(job)

            if start + batch_size < len(entry_ids):
                await asyncio.sleep(self.settings.job_batch_delay)

        successful = sum(1 for r in results if r["status"] == "succeeded")
        return {
            "total": len(entry_ids),
            "successful": successful,
            "failed": len(results) - successful,
            "results": results,
        }

    # ============================================================================
    # Retry
    # ============================================================================

    def _schedule_retry(self, job: AnalysisJob) -> None:
        delay = self.retry_policy.calculate_delay(job.attempts)
        task = asyncio.create_task(self._requeue_after(job, delay))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)
        logger.info("Job retry scheduled", job_id=job.id, delay_seconds=delay,
                    next_attempt=job.attempts + 1, max_retries=job.options.max_retries)

    async def _requeue_after(self, job: AnalysisJob, delay: float) -> None:
        await asyncio.sleep(delay)
        job.status = JobStatus.PENDING
        self.queue.appendleft(job)
        log_job_transition(logger, job.id, JobStatus.RETRY.value, job.status.value)
        await self._mirror(job)

    # ============================================================================
    # Introspection / admin
    # ============================================================================

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """Status from the cache mirror only; unknown or expired ids report not_found."""
        mirror = await self.cache.get_cached_job_status(job_id)
        if not mirror:
            return {"status": "not_found"}
        return {field: mirror.get(field) for field in STATUS_FIELDS}

    def get_queue_stats(self) -> Dict[str, Any]:
        """In-memory queue only."""
        return {
            "total": len(self.queue),
            "pending": sum(1 for job in self.queue if job.status == JobStatus.PENDING),
            "processing": 1 if self._processing else 0,
            "is_active": self._task is not None,
        }

    def clear_completed(self) -> int:
        """Drop terminal jobs from the queue; cache mirrors are left to expire."""
        before = len(self.queue)
        self.queue = deque(job for job in self.queue if not job.is_terminal)
        cleared = before - len(self.queue)
        logger.info("Cleared terminal jobs", cleared=cleared)
        return cleared

    def emergency_stop(self) -> int:
        """Halt polling, cancel pending retries and discard every queued job."""
        self.stop_processing()
        for task in list(self._retry_tasks):
            task.cancel()
        cleared = len(self.queue)
        self.queue.clear()
        logger.warning("Emergency stop", cleared=cleared)
        return cleared

    async def shutdown(self) -> None:
        """Cancel the polling loop and retry timers (application shutdown)."""
        task, self._task = self._task, None
        pending = [t for t in [task, *self._retry_tasks] if t is not None]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Job queue shut down", remaining=len(self.queue))
