"""
Persistent log of analysis runs.

The scheduler calls start() when a run begins and finish() when it ends.
Each call opens its own session so logging never shares a transaction
with the work being logged.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from provisioning_ops.models.analysis_run import AnalysisRun, AnalysisRunStatus
from provisioning_ops.models.base import ensure_utc, utc_now

logger = logging.getLogger(__name__)


def format_age(then: Optional[datetime], now: Optional[datetime] = None) -> Optional[str]:
    """Human readable age: "just now", "5 minutes ago", "3 days ago"."""
    if then is None:
        return None
    now = now or utc_now()
    seconds = int((now - ensure_utc(then)).total_seconds())
    if seconds < 60:
        return "just now"
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return "just now"


def run_to_dict(run: AnalysisRun) -> Dict[str, Any]:
    return {
        "id": run.id,
        "job_type": run.job_type,
        "status": run.status,
        "started_at": ensure_utc(run.started_at).isoformat() if run.started_at else None,
        "completed_at": ensure_utc(run.completed_at).isoformat() if run.completed_at else None,
        "records_scanned": run.records_scanned,
        "events_found": run.events_found,
        "records_skipped": run.records_skipped,
        "duration_seconds": run.duration_seconds,
        "cancelled": run.cancelled,
        "error_message": run.error_message,
    }


class AnalysisRunLog:
    """Writes and reads AnalysisRun rows."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def start(self, job_type: str, parameters: Dict[str, Any], started_at: datetime) -> str:
        session = self._session_factory()
        try:
            run = AnalysisRun(
                job_type=job_type,
                status=AnalysisRunStatus.RUNNING.value,
                started_at=started_at,
                parameters=dict(parameters or {}),
            )
            session.add(run)
            session.commit()
            return run.id
        finally:
            session.close()

    def finish(self, run_id: str, summary) -> None:
        session = self._session_factory()
        try:
            run = session.query(AnalysisRun).filter(AnalysisRun.id == run_id).first()
            if run is None:
                logger.warning("analysis_run_log.missing_run", extra={"run_id": run_id})
                return
            run.status = summary.status.value
            run.completed_at = summary.completed_at
            run.records_scanned = summary.records_scanned
            run.events_found = summary.events_found
            run.records_skipped = summary.records_skipped
            run.duration_seconds = summary.duration_seconds
            run.cancelled = summary.cancelled
            run.error_message = summary.first_error
            session.commit()
        finally:
            session.close()


def latest_run(
    db: Session,
    job_type: str,
    status: Optional[str] = None,
) -> Optional[AnalysisRun]:
    query = db.query(AnalysisRun).filter(AnalysisRun.job_type == job_type)
    if status is not None:
        query = query.filter(AnalysisRun.status == status)
    return query.order_by(AnalysisRun.started_at.desc()).first()


def recent_runs(db: Session, job_type: Optional[str] = None, limit: int = 20) -> List[AnalysisRun]:
    query = db.query(AnalysisRun)
    if job_type is not None:
        query = query.filter(AnalysisRun.job_type == job_type)
    return query.order_by(AnalysisRun.started_at.desc()).limit(limit).all()


def analysis_status(db: Session, job_type: str) -> Dict[str, Any]:
    """Last completed run of a job kind, with an age string for display."""
    run = latest_run(db, job_type, status=AnalysisRunStatus.COMPLETED.value)
    if run is None:
        return {"has_analysis": False, "analysis": None, "age": None}
    return {
        "has_analysis": True,
        "analysis": run_to_dict(run),
        "age": format_age(run.completed_at),
    }
