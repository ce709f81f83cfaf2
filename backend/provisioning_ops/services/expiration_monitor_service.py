"""
Expiration monitor read model.

Builds the expiration report from the latest snapshot of every PS record
and attaches the completion time of the last expiration refresh.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from provisioning_ops.config.analysis_policy import AnalysisPolicy
from provisioning_ops.models.base import utc_now
from provisioning_ops.services.analysis_run_log import analysis_status
from provisioning_ops.services.analysis_scheduler import JobType
from provisioning_ops.services.expiration_classifier import ExpirationReport, build_expiration_report
from provisioning_ops.services.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)


def report_to_dict(report: ExpirationReport) -> Dict[str, Any]:
    return {
        "summary": report.summary,
        "expirations": [
            {
                "account": {"id": entry.account_id},
                "ps_record": {
                    "id": entry.record_id,
                    "name": entry.record_name,
                    "deployment_id": entry.deployment_id,
                },
                "status": entry.status.value,
                "earliest_expiry": entry.earliest_expiry.isoformat(),
                "days_until_expiry": entry.days_until_expiry,
                "products": entry.classification.products(),
            }
            for entry in report.entries
        ],
        "expiration_window": report.window_days,
    }


class ExpirationMonitorService:
    def __init__(self, db_session: Session, policy: AnalysisPolicy):
        self.db = db_session
        self.policy = policy

    def build_report(
        self,
        window_days: Optional[int] = None,
        include_extended: bool = False,
        as_of: Optional[datetime] = None,
    ) -> ExpirationReport:
        window = self.policy.default_window_days if window_days is None else window_days
        snapshots = SnapshotStore(self.db).latest_per_record()
        return build_expiration_report(
            snapshots,
            window,
            as_of or utc_now(),
            policy=self.policy,
            include_extended=include_extended,
        )

    def get_monitor(
        self,
        window_days: Optional[int] = None,
        include_extended: bool = False,
        as_of: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        report = self.build_report(window_days, include_extended, as_of)
        status = self.status()
        result = report_to_dict(report)
        result["last_analyzed"] = (
            status["analysis"]["completed_at"] if status["has_analysis"] else None
        )

        logger.info(
            "expiration_monitor.served",
            extra={
                "window_days": report.window_days,
                "include_extended": include_extended,
                "total_expiring": len(report.entries),
            },
        )
        return result

    def status(self) -> Dict[str, Any]:
        return analysis_status(self.db, JobType.EXPIRATION_REFRESH.value)
