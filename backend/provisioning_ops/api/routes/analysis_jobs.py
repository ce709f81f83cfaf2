"""
Analysis job polling API routes.

Provides:
- GET /api/analysis/jobs - State of every job kind
- GET /api/analysis/jobs/{job_type} - State and last run of one job kind
- GET /api/analysis/runs - Persisted run log
- POST /api/analysis/jobs/{job_type}/cancel - Stop dispatching new work
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from provisioning_ops.api.dependencies.engine import get_analysis_engine
from provisioning_ops.api.schemas.common import JobStatusResponse
from provisioning_ops.database.session import get_db_session
from provisioning_ops.services.analysis_engine import AnalysisEngine
from provisioning_ops.services.analysis_run_log import recent_runs, run_to_dict
from provisioning_ops.services.analysis_scheduler import JobType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analysis", tags=["analysis"])


def _job_type(value: str) -> JobType:
    try:
        return JobType(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": f"Unknown job '{value}'"},
        )


@router.get("/jobs", response_model=List[JobStatusResponse])
async def list_jobs(engine: AnalysisEngine = Depends(get_analysis_engine)):
    return engine.scheduler.all_statuses()


@router.get("/jobs/{job_type}", response_model=JobStatusResponse)
async def get_job(job_type: str, engine: AnalysisEngine = Depends(get_analysis_engine)):
    return engine.scheduler.status(_job_type(job_type))


@router.post("/jobs/{job_type}/cancel")
async def cancel_job(job_type: str, engine: AnalysisEngine = Depends(get_analysis_engine)):
    job = _job_type(job_type)
    if not engine.scheduler.cancel(job):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "not_running", "message": f"Analysis '{job.value}' is not running"},
        )
    return {"jobType": job.value, "cancelRequested": True}


@router.get("/runs")
async def list_runs(
    job_type: Optional[str] = Query(default=None, alias="jobType"),
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db_session),
):
    if job_type is not None:
        job_type = _job_type(job_type).value
    return {"runs": [run_to_dict(r) for r in recent_runs(db, job_type, limit)]}
