"""
Tests for the analysis scheduler.

Validates:
- One run per job kind (ConflictError while running, not queued)
- Different job kinds run concurrently
- Failed items are counted and do not stop the scan
- FAILED when fetch/finalize raises or nothing could be processed
- Cancellation stops dispatch and reports cancelled=True
- Completion callback and run log hooks
- State machine transitions
"""

import asyncio
import threading
import time
from unittest.mock import MagicMock

import pytest

from provisioning_ops.errors import ConflictError, InvalidJobTransition
from provisioning_ops.services.analysis_scheduler import (
    AnalysisScheduler,
    JobState,
    JobType,
    UnitResult,
)


def _ok(item):
    return UnitResult(records=1, events=item)


class TestRun:

    @pytest.mark.asyncio
    async def test_summary_counts(self):
        scheduler = AnalysisScheduler(max_workers=3)

        summary = await scheduler.run(JobType.AUDIT_CAPTURE, lambda: [1, 2, 3, 0], _ok)

        assert summary.status == JobState.COMPLETED
        assert summary.records_scanned == 4
        assert summary.events_found == 6
        assert summary.records_skipped == 0
        assert summary.cancelled is False
        assert scheduler.last_run(JobType.AUDIT_CAPTURE) is summary
        assert scheduler.status(JobType.AUDIT_CAPTURE)["state"] == "idle"

    @pytest.mark.asyncio
    async def test_empty_scan_completes(self):
        scheduler = AnalysisScheduler()

        summary = await scheduler.run(JobType.AUDIT_CAPTURE, lambda: [], _ok)

        assert summary.status == JobState.COMPLETED
        assert summary.records_scanned == 0

    @pytest.mark.asyncio
    async def test_failing_item_is_skipped(self):
        def process(item):
            if item == "bad":
                raise RuntimeError("boom")
            return UnitResult(records=1)

        scheduler = AnalysisScheduler(max_workers=2)

        summary = await scheduler.run(JobType.EXPIRATION_REFRESH, lambda: ["a", "bad", "b"], process)

        assert summary.status == JobState.COMPLETED
        assert summary.records_scanned == 3
        assert summary.records_skipped == 1
        assert summary.first_error == "boom"

    @pytest.mark.asyncio
    async def test_failed_deployment_counts_its_records(self):
        def process(item):
            if "bad" in item:
                raise RuntimeError("boom")
            return UnitResult(records=len(item))

        scheduler = AnalysisScheduler()

        summary = await scheduler.run(
            JobType.AUDIT_CAPTURE, lambda: [["a", "b"], ["bad", "c", "d"]], process
        )

        assert summary.status == JobState.COMPLETED
        assert summary.records_skipped == 3
        assert summary.records_scanned == 5

    @pytest.mark.asyncio
    async def test_nothing_processed_is_failed(self):
        scheduler = AnalysisScheduler()

        summary = await scheduler.run(
            JobType.EXPIRATION_REFRESH,
            lambda: ["a", "b"],
            lambda item: UnitResult(skipped=1, first_error="db down"),
        )

        assert summary.status == JobState.FAILED
        assert summary.records_skipped == 2
        assert summary.first_error == "db down"
        # A failed run still releases the job
        assert scheduler.is_running(JobType.EXPIRATION_REFRESH) is False

    @pytest.mark.asyncio
    async def test_fetch_failure_is_failed(self):
        def fetch():
            raise ConnectionError("source unreachable")

        scheduler = AnalysisScheduler()

        summary = await scheduler.run(JobType.GHOST_ACCOUNT_REFRESH, fetch, _ok)

        assert summary.status == JobState.FAILED
        assert "source unreachable" in summary.first_error

    @pytest.mark.asyncio
    async def test_finalize_overrides_events(self):
        scheduler = AnalysisScheduler()

        summary = await scheduler.run(JobType.EXPIRATION_REFRESH, lambda: [5], _ok, finalize=lambda: 42)

        assert summary.events_found == 42

    @pytest.mark.asyncio
    async def test_finalize_failure_is_failed(self):
        def finalize():
            raise ValueError("projection failed")

        scheduler = AnalysisScheduler()

        summary = await scheduler.run(JobType.GHOST_ACCOUNT_REFRESH, lambda: [1], _ok, finalize=finalize)

        assert summary.status == JobState.FAILED
        assert summary.first_error == "projection failed"


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_second_start_conflicts(self):
        gate = threading.Event()

        def slow(item):
            gate.wait(timeout=5)
            return UnitResult(records=1)

        scheduler = AnalysisScheduler()
        task = scheduler.start(JobType.EXPIRATION_REFRESH, lambda: [1], slow)

        with pytest.raises(ConflictError) as exc_info:
            scheduler.start(JobType.EXPIRATION_REFRESH, lambda: [1], slow)
        assert exc_info.value.job_type == "expiration-refresh"

        # Another job kind is not blocked
        other = scheduler.start(JobType.AUDIT_CAPTURE, lambda: [1], _ok)
        assert (await other).status == JobState.COMPLETED

        gate.set()
        assert (await task).status == JobState.COMPLETED

        # Released: a new run can start
        assert (await scheduler.run(JobType.EXPIRATION_REFRESH, lambda: [], _ok)).status == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_stops_dispatch(self):
        started = threading.Event()
        gate = threading.Event()

        def process(item):
            started.set()
            gate.wait(timeout=5)
            return UnitResult(records=1)

        scheduler = AnalysisScheduler(max_workers=1)
        task = scheduler.start(JobType.PACKAGE_CHANGE_REFRESH, lambda: list(range(10)), process)

        await asyncio.to_thread(started.wait, 5)
        assert scheduler.status(JobType.PACKAGE_CHANGE_REFRESH)["progress"]["total"] == 10
        assert scheduler.cancel(JobType.PACKAGE_CHANGE_REFRESH) is True
        gate.set()
        summary = await task

        assert summary.cancelled is True
        assert summary.records_scanned == 1
        assert summary.status == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_worker_pool_is_bounded(self):
        lock = threading.Lock()
        active = 0
        peak = 0

        def process(item):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return UnitResult(records=1)

        scheduler = AnalysisScheduler(max_workers=3)

        summary = await scheduler.run(JobType.AUDIT_CAPTURE, lambda: list(range(12)), process)

        assert summary.records_scanned == 12
        assert 1 <= peak <= 3

    @pytest.mark.asyncio
    async def test_cancelled_caller_leaves_run_going(self):
        started = threading.Event()
        gate = threading.Event()

        def process(item):
            started.set()
            gate.wait(timeout=5)
            return UnitResult(records=1)

        scheduler = AnalysisScheduler(max_workers=1)
        caller = asyncio.create_task(scheduler.run(JobType.EXPIRATION_REFRESH, lambda: [1, 2], process))

        await asyncio.to_thread(started.wait, 5)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        gate.set()

        summary = await scheduler.wait(JobType.EXPIRATION_REFRESH)
        assert summary.status == JobState.COMPLETED
        assert summary.records_scanned == 2
        assert scheduler.is_running(JobType.EXPIRATION_REFRESH) is False

        again = await scheduler.run(JobType.EXPIRATION_REFRESH, lambda: [], _ok)
        assert again.status == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_cancelled_run_task_returns_to_idle(self):
        started = threading.Event()
        gate = threading.Event()

        def process(item):
            started.set()
            gate.wait(timeout=5)
            return UnitResult(records=1)

        run_log = MagicMock()
        run_log.start.return_value = "run-1"
        scheduler = AnalysisScheduler(max_workers=1, run_log=run_log)
        task = scheduler.start(JobType.EXPIRATION_REFRESH, lambda: [1], process)

        await asyncio.to_thread(started.wait, 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        gate.set()

        assert scheduler.status(JobType.EXPIRATION_REFRESH)["state"] == "idle"
        last = scheduler.last_run(JobType.EXPIRATION_REFRESH)
        assert last.status == JobState.FAILED
        assert "CancelledError" in last.first_error
        run_log.finish.assert_called_once_with("run-1", last)

        again = await scheduler.run(JobType.EXPIRATION_REFRESH, lambda: [], _ok)
        assert again.status == JobState.COMPLETED

    def test_cancel_idle_job(self):
        assert AnalysisScheduler().cancel(JobType.AUDIT_CAPTURE) is False

    def test_start_requires_running_loop(self):
        scheduler = AnalysisScheduler()

        with pytest.raises(RuntimeError):
            scheduler.start(JobType.AUDIT_CAPTURE, lambda: [], _ok)
        assert scheduler.is_running(JobType.AUDIT_CAPTURE) is False


class TestHooks:

    @pytest.mark.asyncio
    async def test_on_complete_sync_and_async(self):
        seen = []

        async def async_callback(summary):
            seen.append(("async", summary.job_type))

        scheduler = AnalysisScheduler()
        await scheduler.run(JobType.AUDIT_CAPTURE, lambda: [], _ok, on_complete=lambda s: seen.append(("sync", s.job_type)))
        await scheduler.run(JobType.AUDIT_CAPTURE, lambda: [], _ok, on_complete=async_callback)

        assert seen == [("sync", JobType.AUDIT_CAPTURE), ("async", JobType.AUDIT_CAPTURE)]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_run(self):
        def callback(summary):
            raise RuntimeError("listener down")

        scheduler = AnalysisScheduler()

        summary = await scheduler.run(JobType.AUDIT_CAPTURE, lambda: [1], _ok, on_complete=callback)

        assert summary.status == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_run_log_hooks(self):
        run_log = MagicMock()
        run_log.start.return_value = "run-1"
        scheduler = AnalysisScheduler(run_log=run_log)

        summary = await scheduler.run(
            JobType.EXPIRATION_REFRESH, lambda: [1], _ok, parameters={"window_days": 30}
        )

        assert summary.run_id == "run-1"
        job_type, parameters, _ = run_log.start.call_args.args
        assert job_type == "expiration-refresh"
        assert parameters == {"window_days": 30}
        run_log.finish.assert_called_once_with("run-1", summary)

    @pytest.mark.asyncio
    async def test_run_log_failure_is_tolerated(self):
        run_log = MagicMock()
        run_log.start.side_effect = RuntimeError("log table missing")
        scheduler = AnalysisScheduler(run_log=run_log)

        summary = await scheduler.run(JobType.AUDIT_CAPTURE, lambda: [1], _ok)

        assert summary.status == JobState.COMPLETED
        assert summary.run_id is None
        run_log.finish.assert_not_called()


class TestStateMachine:

    def test_invalid_transition(self):
        scheduler = AnalysisScheduler()

        with pytest.raises(InvalidJobTransition):
            scheduler._transition(JobType.AUDIT_CAPTURE, JobState.COMPLETED)

    def test_all_statuses(self):
        statuses = AnalysisScheduler().all_statuses()

        assert [s["job_type"] for s in statuses] == [j.value for j in JobType]
        assert all(s["state"] == "idle" and s["last_run"] is None for s in statuses)

    def test_max_workers_validated(self):
        with pytest.raises(ValueError):
            AnalysisScheduler(max_workers=0)
