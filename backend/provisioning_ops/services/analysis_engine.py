"""
Analysis engine: wires source connectors, the capture pipeline and the
scheduler into the four analysis jobs.

Every job starts with a scan: records are fetched from the configured
sources, grouped by deployment and captured one deployment per work item.
The job then finalizes its own projection:

- audit-capture: nothing further (the light periodic capture)
- expiration-refresh: counts expiring records in the requested window
- package-change-refresh: events found are the package changes captured
- ghost-account-refresh: recomputes and replaces the ghost account flags
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from provisioning_ops.config.analysis_policy import AnalysisPolicy
from provisioning_ops.integrations.sources.client import SourceConnector
from provisioning_ops.integrations.sources.models import RawProvisioningRecord
from provisioning_ops.services.analysis_run_log import AnalysisRunLog
from provisioning_ops.services.analysis_scheduler import (
    AnalysisScheduler,
    JobType,
    OnComplete,
    RunSummary,
)
from provisioning_ops.services.capture_service import CaptureService, group_by_deployment
from provisioning_ops.services.expiration_monitor_service import ExpirationMonitorService
from provisioning_ops.services.ghost_account_detector import GhostAccountService
from provisioning_ops.services.snapshot_store import RecordLockRegistry

logger = logging.getLogger(__name__)

DEFAULT_YEARS_BACK = 5
DEFAULT_CAPTURE_YEARS_BACK = 1


class AnalysisEngine:
    """
    Entry point used by the API routers and the capture worker.

    Args:
        session_factory: returns a new Session per unit of work
        policy: analysis policy
        connectors: record sources
        scheduler: shared scheduler (one per process)
        locks: per-record lock registry
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        policy: AnalysisPolicy,
        connectors: Iterable[SourceConnector],
        scheduler: Optional[AnalysisScheduler] = None,
        locks: Optional[RecordLockRegistry] = None,
    ):
        self._session_factory = session_factory
        self.policy = policy
        self.connectors = list(connectors)
        self.scheduler = scheduler or AnalysisScheduler(
            max_workers=policy.max_workers,
            run_log=AnalysisRunLog(session_factory),
        )
        self.capture = CaptureService(session_factory, policy, locks=locks)

    # ------------------------------------------------------------------
    # Scan plumbing
    # ------------------------------------------------------------------

    def fetch_work_items(self, since_years: float) -> List[List[RawProvisioningRecord]]:
        """All records from all sources, one work item per deployment."""
        records: List[RawProvisioningRecord] = []
        for connector in self.connectors:
            fetched = list(connector.fetch_records(since_years))
            logger.info(
                "analysis_engine.records_fetched",
                extra={"source": connector.name, "count": len(fetched)},
            )
            records.extend(fetched)
        return group_by_deployment(records)

    def _start(
        self,
        job_type: JobType,
        since_years: float,
        finalize=None,
        on_complete: Optional[OnComplete] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ):
        return self.scheduler.start(
            job_type,
            fetch_items=lambda: self.fetch_work_items(since_years),
            process_item=self.capture.capture_deployment,
            finalize=finalize,
            on_complete=on_complete,
            parameters={"years_back": since_years, **(parameters or {})},
        )

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def start_capture(self, since_years: float = DEFAULT_CAPTURE_YEARS_BACK, on_complete=None):
        """Light capture of all records (audit-capture)."""
        return self._start(JobType.AUDIT_CAPTURE, since_years, on_complete=on_complete)

    def start_expiration_refresh(
        self,
        years_back: float = DEFAULT_YEARS_BACK,
        window_days: Optional[int] = None,
        on_complete=None,
    ):
        window = self.policy.default_window_days if window_days is None else window_days

        def count_expirations() -> int:
            session = self._session_factory()
            try:
                report = ExpirationMonitorService(session, self.policy).build_report(window)
                return len(report.entries)
            finally:
                session.close()

        return self._start(
            JobType.EXPIRATION_REFRESH,
            years_back,
            finalize=count_expirations,
            on_complete=on_complete,
            parameters={"window_days": window},
        )

    def start_package_change_refresh(self, years_back: float = DEFAULT_YEARS_BACK, on_complete=None):
        return self._start(JobType.PACKAGE_CHANGE_REFRESH, years_back, on_complete=on_complete)

    def start_ghost_account_refresh(self, years_back: float = DEFAULT_YEARS_BACK, on_complete=None):
        def recompute_ghosts() -> int:
            session = self._session_factory()
            try:
                service = GhostAccountService(session, self.policy.ghost_excluded_request_types)
                return len(service.refresh())
            finally:
                session.close()

        return self._start(
            JobType.GHOST_ACCOUNT_REFRESH,
            years_back,
            finalize=recompute_ghosts,
            on_complete=on_complete,
        )

    async def capture_all(self, since_years: float = DEFAULT_CAPTURE_YEARS_BACK) -> RunSummary:
        return await asyncio.shield(self.start_capture(since_years))

    async def refresh_expirations(
        self, years_back: float = DEFAULT_YEARS_BACK, window_days: Optional[int] = None
    ) -> RunSummary:
        return await asyncio.shield(self.start_expiration_refresh(years_back, window_days))

    async def refresh_package_changes(self, years_back: float = DEFAULT_YEARS_BACK) -> RunSummary:
        return await asyncio.shield(self.start_package_change_refresh(years_back))

    async def refresh_ghost_accounts(self, years_back: float = DEFAULT_YEARS_BACK) -> RunSummary:
        return await asyncio.shield(self.start_ghost_account_refresh(years_back))

    def close(self) -> None:
        for connector in self.connectors:
            connector.close()
