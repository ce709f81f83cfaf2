"""
Analysis scheduler - runs analysis jobs with at most one run per job kind.

State machine per job kind:

    idle -> running -> completed -> idle
                    -> failed    -> idle

Any other transition raises InvalidJobTransition. Starting a job kind that
is already running raises ConflictError; the request is rejected, not
queued.

A run fetches its work items, then N asyncio workers pull items from a
queue and hand each one to process_item in a worker thread. Every item is
its own unit of work: a failing item is logged and counted, committed work
from other items is kept, and the scan carries on.

Cancellation stops dispatching new items, lets in-flight items finish and
reports the partial summary with cancelled=True.
If the run task itself is cancelled, the run ends FAILED and the job kind
returns to idle.

A run is FAILED when fetching or finalizing raises, or when there were
items to process and none of them could be processed. Otherwise it is
COMPLETED, even if some records were skipped.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from provisioning_ops.errors import ConflictError, InvalidJobTransition
from provisioning_ops.models.base import utc_now

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    EXPIRATION_REFRESH = "expiration-refresh"
    PACKAGE_CHANGE_REFRESH = "package-change-refresh"
    GHOST_ACCOUNT_REFRESH = "ghost-account-refresh"
    AUDIT_CAPTURE = "audit-capture"


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    JobState.IDLE: {JobState.RUNNING},
    JobState.RUNNING: {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: {JobState.IDLE},
    JobState.FAILED: {JobState.IDLE},
}


@dataclass
class UnitResult:
    """Outcome of one work item (usually one deployment's records)."""

    records: int = 0
    events: int = 0
    skipped: int = 0
    first_error: Optional[str] = None


@dataclass
class RunSummary:
    job_type: JobType
    status: JobState
    started_at: datetime
    completed_at: Optional[datetime] = None
    records_scanned: int = 0
    events_found: int = 0
    records_skipped: int = 0
    duration_seconds: float = 0.0
    cancelled: bool = False
    first_error: Optional[str] = None
    run_id: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_type": self.job_type.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "records_scanned": self.records_scanned,
            "events_found": self.events_found,
            "records_skipped": self.records_skipped,
            "duration_seconds": round(self.duration_seconds, 3),
            "cancelled": self.cancelled,
            "first_error": self.first_error,
            "run_id": self.run_id,
        }


FetchItems = Callable[[], Iterable[Any]]
ProcessItem = Callable[[Any], UnitResult]
Finalize = Callable[[], Optional[int]]
OnComplete = Callable[[RunSummary], Any]


def _item_size(item: Any) -> int:
    """Records in a work item; a deployment item is a list of records."""
    if isinstance(item, (list, tuple)):
        return len(item) or 1
    return 1


@dataclass
class _JobSlot:
    state: JobState = JobState.IDLE
    task: Optional[asyncio.Task] = None
    cancel_event: Optional[asyncio.Event] = None
    last_summary: Optional[RunSummary] = None
    total_items: int = 0
    done_items: int = 0


class AnalysisScheduler:
    """
    In-process scheduler for analysis jobs.

    Args:
        max_workers: worker pool size for each run
        run_log: optional sink with start(job_type, parameters, started_at)
            and finish(run_id, summary); called from worker threads
    """

    def __init__(self, max_workers: int = 4, run_log=None):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self.run_log = run_log
        self._slots: Dict[JobType, _JobSlot] = {job: _JobSlot() for job in JobType}

    def _slot(self, job_type) -> _JobSlot:
        return self._slots[JobType(job_type)]

    def _transition(self, job_type: JobType, target: JobState) -> None:
        slot = self._slot(job_type)
        if target not in ALLOWED_TRANSITIONS[slot.state]:
            raise InvalidJobTransition(job_type.value, slot.state.value, target.value)
        logger.debug(
            "analysis_scheduler.transition",
            extra={"job_type": job_type.value, "from": slot.state.value, "to": target.value},
        )
        slot.state = target

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(
        self,
        job_type,
        fetch_items: FetchItems,
        process_item: ProcessItem,
        finalize: Optional[Finalize] = None,
        on_complete: Optional[OnComplete] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> "asyncio.Task[RunSummary]":
        """
        Start a run in the background and return its task.

        Must be called from inside the event loop.

        Raises:
            ConflictError: if a run of this job kind is in flight
        """
        job_type = JobType(job_type)
        slot = self._slot(job_type)
        asyncio.get_running_loop()
        if slot.state == JobState.RUNNING:
            logger.info(
                "analysis_scheduler.conflict",
                extra={"job_type": job_type.value},
            )
            raise ConflictError(job_type.value)

        self._transition(job_type, JobState.RUNNING)
        slot.cancel_event = asyncio.Event()
        slot.total_items = 0
        slot.done_items = 0
        slot.task = asyncio.create_task(
            self._execute(job_type, fetch_items, process_item, finalize, on_complete, parameters or {}),
            name=f"analysis:{job_type.value}",
        )
        return slot.task

    async def run(self, job_type, fetch_items: FetchItems, process_item: ProcessItem, **kwargs) -> RunSummary:
        """Start a run and wait for its summary. Cancelling the caller leaves the run going."""
        return await asyncio.shield(self.start(job_type, fetch_items, process_item, **kwargs))

    async def wait(self, job_type) -> Optional[RunSummary]:
        """Wait for the in-flight run (if any) and return the latest summary."""
        slot = self._slot(job_type)
        if slot.task is not None and not slot.task.done():
            await asyncio.shield(slot.task)
        return slot.last_summary

    def cancel(self, job_type) -> bool:
        """Request cancellation. Returns False if the job is not running."""
        slot = self._slot(job_type)
        if slot.state != JobState.RUNNING or slot.cancel_event is None:
            return False
        slot.cancel_event.set()
        logger.info("analysis_scheduler.cancel_requested", extra={"job_type": JobType(job_type).value})
        return True

    def is_running(self, job_type) -> bool:
        return self._slot(job_type).state == JobState.RUNNING

    def last_run(self, job_type) -> Optional[RunSummary]:
        return self._slot(job_type).last_summary

    def status(self, job_type) -> Dict[str, Any]:
        slot = self._slot(job_type)
        return {
            "job_type": JobType(job_type).value,
            "state": slot.state.value,
            "progress": {"total": slot.total_items, "done": slot.done_items}
            if slot.state == JobState.RUNNING
            else None,
            "last_run": slot.last_summary.to_dict() if slot.last_summary else None,
        }

    def all_statuses(self) -> List[Dict[str, Any]]:
        return [self.status(job) for job in JobType]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        job_type: JobType,
        fetch_items: FetchItems,
        process_item: ProcessItem,
        finalize: Optional[Finalize],
        on_complete: Optional[OnComplete],
        parameters: Dict[str, Any],
    ) -> RunSummary:
        slot = self._slot(job_type)
        summary = RunSummary(
            job_type=job_type,
            status=JobState.RUNNING,
            started_at=utc_now(),
            parameters=parameters,
        )
        clock = time.monotonic()

        logger.info(
            "analysis_scheduler.run_started",
            extra={"job_type": job_type.value, "parameters": parameters},
        )

        try:
            summary.run_id = await self._log_start(summary)
            final_state = await self._scan(job_type, slot, summary, fetch_items, process_item, finalize)
        except BaseException as e:
            # Task cancelled or loop shutting down: the slot must still leave RUNNING
            self._abort(job_type, slot, summary, clock, e)
            raise

        summary.status = final_state
        summary.completed_at = utc_now()
        summary.duration_seconds = time.monotonic() - clock
        self._transition(job_type, final_state)
        slot.last_summary = summary
        self._transition(job_type, JobState.IDLE)

        await self._log_finish(summary)

        log = logger.warning if final_state == JobState.FAILED else logger.info
        log(
            "analysis_scheduler.run_finished",
            extra={
                "job_type": job_type.value,
                "status": final_state.value,
                "records_scanned": summary.records_scanned,
                "events_found": summary.events_found,
                "records_skipped": summary.records_skipped,
                "cancelled": summary.cancelled,
                "duration_seconds": round(summary.duration_seconds, 3),
            },
        )

        if on_complete is not None:
            try:
                outcome = on_complete(summary)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                logger.exception(
                    "analysis_scheduler.callback_failed",
                    extra={"job_type": job_type.value},
                )

        return summary

    async def _scan(
        self,
        job_type: JobType,
        slot: _JobSlot,
        summary: RunSummary,
        fetch_items: FetchItems,
        process_item: ProcessItem,
        finalize: Optional[Finalize],
    ) -> JobState:
        """Fetch, process and finalize; returns the state the run ends in."""
        fatal = False
        processed = 0

        try:
            items = list(await asyncio.to_thread(fetch_items))
        except Exception as e:
            logger.exception(
                "analysis_scheduler.fetch_failed",
                extra={"job_type": job_type.value},
            )
            items = []
            fatal = True
            summary.first_error = str(e)

        slot.total_items = len(items)
        queue: asyncio.Queue = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)

        async def worker() -> None:
            nonlocal processed
            while not slot.cancel_event.is_set():
                try:
                    item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    result = await asyncio.to_thread(process_item, item)
                except Exception as e:
                    logger.exception(
                        "analysis_scheduler.item_failed",
                        extra={"job_type": job_type.value},
                    )
                    summary.records_skipped += _item_size(item)
                    if summary.first_error is None:
                        summary.first_error = str(e)
                else:
                    processed += result.records
                    summary.events_found += result.events
                    summary.records_skipped += result.skipped
                    if summary.first_error is None and result.first_error:
                        summary.first_error = result.first_error
                finally:
                    slot.done_items += 1

        if items:
            await asyncio.gather(*(worker() for _ in range(min(self.max_workers, len(items)))))

        summary.cancelled = slot.cancel_event.is_set() and slot.done_items < len(items)
        summary.records_scanned = processed + summary.records_skipped

        if finalize is not None and not fatal:
            try:
                override = await asyncio.to_thread(finalize)
                if override is not None:
                    summary.events_found = override
            except Exception as e:
                logger.exception(
                    "analysis_scheduler.finalize_failed",
                    extra={"job_type": job_type.value},
                )
                fatal = True
                summary.first_error = summary.first_error or str(e)

        nothing_processed = bool(items) and processed == 0 and summary.records_skipped > 0
        return JobState.FAILED if fatal or nothing_processed else JobState.COMPLETED

    def _abort(
        self,
        job_type: JobType,
        slot: _JobSlot,
        summary: RunSummary,
        clock: float,
        error: BaseException,
    ) -> None:
        summary.status = JobState.FAILED
        summary.completed_at = utc_now()
        summary.duration_seconds = time.monotonic() - clock
        summary.first_error = summary.first_error or f"run interrupted ({type(error).__name__})"
        if slot.state == JobState.RUNNING:
            self._transition(job_type, JobState.FAILED)
            slot.last_summary = summary
            self._transition(job_type, JobState.IDLE)

        logger.warning(
            "analysis_scheduler.run_interrupted",
            extra={
                "job_type": job_type.value,
                "records_scanned": summary.records_scanned,
                "error": summary.first_error,
            },
        )

        if self.run_log is not None and summary.run_id is not None:
            # Called synchronously: the task is being torn down and cannot await
            try:
                self.run_log.finish(summary.run_id, summary)
            except Exception:
                logger.exception(
                    "analysis_scheduler.run_log_failed",
                    extra={"job_type": job_type.value},
                )

    async def _log_start(self, summary: RunSummary) -> Optional[str]:
        if self.run_log is None:
            return None
        try:
            return await asyncio.to_thread(
                self.run_log.start, summary.job_type.value, summary.parameters, summary.started_at
            )
        except Exception:
            logger.exception(
                "analysis_scheduler.run_log_failed",
                extra={"job_type": summary.job_type.value},
            )
            return None

    async def _log_finish(self, summary: RunSummary) -> None:
        if self.run_log is None or summary.run_id is None:
            return
        try:
            await asyncio.to_thread(self.run_log.finish, summary.run_id, summary)
        except Exception:
            logger.exception(
                "analysis_scheduler.run_log_failed",
                extra={"job_type": summary.job_type.value},
            )
