"""Tests for the in-process analysis job queue."""

import asyncio

import pytest

from models.jobs import AnalysisJob, JobOptions, JobStatus
from services.analysis import AnalysisResult
from services.job_queue import AnalysisJobQueue


async def wait_for_retries(queue):
    """Let scheduled retry timers (zero delay here) re-enqueue their jobs."""
    for _ in range(100):
        if not queue._retry_tasks:
            return
        await asyncio.sleep(0)
    raise AssertionError("retry tasks did not finish")


def _results(outcomes):
    """side_effect mapping entry ids to results or exceptions."""

    async def analyze(entry_id, force_refresh=False):
        outcome = outcomes[entry_id]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return analyze


class TestEnqueue:

    async def test_new_job_is_pending_and_mirrored(self, job_queue):
        job_id = await job_queue.add_analysis_job("entry-1")

        status = await job_queue.get_job_status(job_id)

        assert job_id.startswith("analysis_entry-1_")
        assert status["status"] == "pending"
        assert status["attempts"] == 0
        assert job_queue.get_queue_stats() == {"total": 1, "pending": 1, "processing": 0, "is_active": True}

    async def test_job_ids_are_unique(self, job_queue):
        first = await job_queue.add_analysis_job("entry-1")
        second = await job_queue.add_analysis_job("entry-1")

        assert first != second

    async def test_high_priority_runs_first(self, job_queue, analysis):
        await job_queue.add_analysis_job("normal-1")
        await job_queue.add_analysis_job("normal-2")
        await job_queue.add_analysis_job("urgent", priority="high")

        while job_queue.queue:
            await job_queue.process_next_job()

        order = [call.args[0] for call in analysis.analyze_entry.await_args_list]
        assert order == ["urgent", "normal-1", "normal-2"]

    async def test_unknown_priority_rejected(self, job_queue):
        with pytest.raises(ValueError):
            await job_queue.add_analysis_job("entry-1", priority="urgent")


class TestProcessing:

    async def test_successful_job_completes(self, job_queue, analysis):
        analysis.analyze_entry.return_value = AnalysisResult(
            success=True, data={"sentiment": "positive"}, usage={"input_tokens": 10}
        )
        job_id = await job_queue.add_analysis_job("entry-1", force_refresh=True)

        job = await job_queue.process_next_job()
        status = await job_queue.get_job_status(job_id)

        assert job.status == JobStatus.COMPLETED
        assert status["status"] == "completed"
        assert status["attempts"] == 1
        assert status["result"] == {
            "entry_id": "entry-1",
            "extracted_data": {"sentiment": "positive"},
            "usage": {"input_tokens": 10},
            "cached": False,
        }
        analysis.analyze_entry.assert_awaited_once_with("entry-1", force_refresh=True)

    async def test_empty_queue_returns_none(self, job_queue):
        assert await job_queue.process_next_job() is None

    async def test_at_most_one_job_processing(self, job_queue, analysis):
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow(entry_id, force_refresh=False):
            started.set()
            await release.wait()
            return AnalysisResult(success=True, data={})

        analysis.analyze_entry.side_effect = slow
        await job_queue.add_analysis_job("entry-1")
        await job_queue.add_analysis_job("entry-2")

        first = asyncio.create_task(job_queue.process_next_job())
        await started.wait()

        assert job_queue.get_queue_stats()["processing"] == 1
        assert await job_queue.process_next_job() is None
        assert len(job_queue.queue) == 1

        release.set()
        assert (await first).status == JobStatus.COMPLETED
        assert job_queue.get_queue_stats()["processing"] == 0

    async def test_failure_is_retried_until_max_retries(self, job_queue, analysis):
        analysis.analyze_entry.return_value = AnalysisResult(success=False, error="model overloaded")
        job_id = await job_queue.add_analysis_job("entry-1", max_retries=3)

        for expected_attempt in (1, 2):
            job = await job_queue.process_next_job()
            assert job.status == JobStatus.RETRY
            assert job.attempts == expected_attempt
            assert (await job_queue.get_job_status(job_id))["status"] == "retry"
            await wait_for_retries(job_queue)
            assert (await job_queue.get_job_status(job_id))["status"] == "pending"

        job = await job_queue.process_next_job()
        status = await job_queue.get_job_status(job_id)

        assert job.status == JobStatus.FAILED
        assert status["status"] == "failed"
        assert status["attempts"] == 3
        assert status["last_error"] == "model overloaded"
        assert status["failed_at"] is not None
        assert not job_queue.queue
        assert analysis.analyze_entry.await_count == 3

    async def test_zero_retries_fails_after_one_attempt(self, job_queue, analysis):
        analysis.analyze_entry.return_value = AnalysisResult(success=False, error="model overloaded")
        job_id = await job_queue.add_analysis_job("entry-1", max_retries=0)

        job = await job_queue.process_next_job()
        status = await job_queue.get_job_status(job_id)

        assert job.options.max_retries == 0
        assert job.status == JobStatus.FAILED
        assert status["status"] == "failed"
        assert status["attempts"] == 1
        assert not job_queue._retry_tasks
        assert not job_queue.queue

    async def test_batch_zero_retries_is_kept(self, job_queue):
        await job_queue.add_batch_analysis_job(["e1", "e2"], max_retries=0)

        assert job_queue.queue[0].options.max_retries == 0

    async def test_exception_counts_as_failed_attempt(self, job_queue, analysis):
        analysis.analyze_entry.side_effect = [RuntimeError("boom"), AnalysisResult(success=True, data={})]
        job_id = await job_queue.add_analysis_job("entry-1")

        await job_queue.process_next_job()
        await wait_for_retries(job_queue)
        await job_queue.process_next_job()

        status = await job_queue.get_job_status(job_id)
        assert status["status"] == "completed"
        assert status["attempts"] == 2
        assert status["last_error"] == "boom"

    async def test_retried_job_goes_to_front(self, job_queue, analysis):
        analysis.analyze_entry.side_effect = _results({
            "flaky": RuntimeError("transient"),
            "other": AnalysisResult(success=True, data={}),
        })
        await job_queue.add_analysis_job("flaky")
        await job_queue.add_analysis_job("other")

        await job_queue.process_next_job()
        await wait_for_retries(job_queue)

        assert [job.entry_id for job in job_queue.queue] == ["flaky", "other"]

    async def test_timeout_fails_the_attempt(self, job_queue, analysis):
        async def hang(entry_id, force_refresh=False):
            await asyncio.sleep(10)

        analysis.analyze_entry.side_effect = hang
        job_id = await job_queue.add_analysis_job("entry-1", max_retries=1, timeout_ms=50)

        job = await job_queue.process_next_job()

        assert job.status == JobStatus.FAILED
        assert "timed out" in (await job_queue.get_job_status(job_id))["last_error"]

    async def test_polling_loop_processes_jobs(self, analysis, cache, settings):
        queue = AnalysisJobQueue(analysis, cache, settings.model_copy(update={"job_poll_interval": 0.01}))
        try:
            job_id = await queue.add_analysis_job("entry-1")
            for _ in range(200):
                if (await queue.get_job_status(job_id))["status"] == "completed":
                    break
                await asyncio.sleep(0.01)

            assert (await queue.get_job_status(job_id))["status"] == "completed"
        finally:
            await queue.shutdown()


class TestBatch:

    async def test_partial_failure(self, job_queue, analysis):
        analysis.analyze_entry.side_effect = _results({
            "e1": AnalysisResult(success=True, data={}),
            "e2": RuntimeError("entry e2 vanished"),
            "e3": AnalysisResult(success=True, data={}, cached=True),
        })
        job_id = await job_queue.add_batch_analysis_job(["e1", "e2", "e3"], batch_size=2)

        await job_queue.process_next_job()
        status = await job_queue.get_job_status(job_id)

        assert status["status"] == "completed"
        assert status["progress"] == {"completed": 3, "total": 3}
        result = status["result"]
        assert (result["total"], result["successful"], result["failed"]) == (3, 2, 1)
        assert result["results"][1] == {"entry_id": "e2", "status": "failed", "error": "entry e2 vanished"}
        assert result["results"][2]["cached"] is True

    async def test_unsuccessful_result_counts_as_failed(self, job_queue, analysis):
        analysis.analyze_entry.side_effect = _results({
            "e1": AnalysisResult(success=False, error="too short"),
        })
        job_id = await job_queue.add_batch_analysis_job(["e1"])

        await job_queue.process_next_job()

        result = (await job_queue.get_job_status(job_id))["result"]
        assert result["failed"] == 1
        assert result["results"][0]["error"] == "too short"

    async def test_batch_status_outlives_entry_status(self, job_queue, clock, settings):
        batch_id = await job_queue.add_batch_analysis_job(["e1"])
        entry_id = await job_queue.add_analysis_job("e1")

        clock.advance(settings.job_status_ttl)

        assert (await job_queue.get_job_status(entry_id))["status"] == "not_found"
        assert (await job_queue.get_job_status(batch_id))["status"] == "pending"


class TestStatusAndAdmin:

    async def test_unknown_job_not_found(self, job_queue):
        assert await job_queue.get_job_status("analysis_missing") == {"status": "not_found"}

    async def test_status_reads_are_idempotent(self, job_queue):
        job_id = await job_queue.add_analysis_job("entry-1")

        assert await job_queue.get_job_status(job_id) == await job_queue.get_job_status(job_id)

    async def test_clear_completed(self, job_queue):
        await job_queue.add_analysis_job("pending")
        done = AnalysisJob.for_entry("done", JobOptions())
        done.mark_completed({})
        failed = AnalysisJob.for_entry("failed", JobOptions())
        failed.mark_failed("gave up")
        job_queue.queue.extend([done, failed])

        assert job_queue.clear_completed() == 2
        assert [job.entry_id for job in job_queue.queue] == ["pending"]

    async def test_emergency_stop(self, job_queue, analysis):
        for entry_id in ("e1", "e2", "e3"):
            await job_queue.add_analysis_job(entry_id)

        assert job_queue.emergency_stop() == 3
        assert job_queue.get_queue_stats() == {"total": 0, "pending": 0, "processing": 0, "is_active": False}
        analysis.analyze_entry.assert_not_awaited()

    async def test_emergency_stop_cancels_pending_retries(self, job_queue, analysis, settings):
        job_queue.retry_policy.initial_delay = 60
        analysis.analyze_entry.return_value = AnalysisResult(success=False, error="nope")
        await job_queue.add_analysis_job("entry-1")
        await job_queue.process_next_job()
        assert len(job_queue._retry_tasks) == 1

        job_queue.emergency_stop()
        await wait_for_retries(job_queue)

        assert not job_queue._retry_tasks
        assert not job_queue.queue
