"""
Expiration monitor API routes.

Provides:
- GET /api/expiration-monitor - Expiring entitlements per PS record
- GET /api/expiration-monitor/status - Last expiration analysis
- POST /api/expiration-monitor/refresh - Re-scan and re-analyze
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from provisioning_ops.api.dependencies.engine import get_analysis_engine, get_analysis_policy
from provisioning_ops.api.dependencies.jobs import accepted, start_job
from provisioning_ops.api.schemas.expiration_monitor import (
    AnalysisStatusResponse,
    ExpirationMonitorResponse,
    ExpirationRefreshRequest,
    ExpirationRefreshResponse,
)
from provisioning_ops.config.analysis_policy import AnalysisPolicy
from provisioning_ops.database.session import get_db_session
from provisioning_ops.services.analysis_engine import AnalysisEngine
from provisioning_ops.services.analysis_scheduler import JobType
from provisioning_ops.services.expiration_monitor_service import ExpirationMonitorService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/expiration-monitor", tags=["expiration-monitor"])


@router.get("", response_model=ExpirationMonitorResponse)
async def get_expiration_monitor(
    window: Optional[int] = Query(default=None, ge=0, le=3650, description="Lookahead window in days"),
    include_extended: bool = Query(default=False, alias="includeExtended"),
    db: Session = Depends(get_db_session),
    policy: AnalysisPolicy = Depends(get_analysis_policy),
):
    """Expiring entitlements grouped by PS record."""
    service = ExpirationMonitorService(db, policy)
    return service.get_monitor(window_days=window, include_extended=include_extended)


@router.get("/status", response_model=AnalysisStatusResponse)
async def get_expiration_status(
    db: Session = Depends(get_db_session),
    policy: AnalysisPolicy = Depends(get_analysis_policy),
    engine: AnalysisEngine = Depends(get_analysis_engine),
):
    result = ExpirationMonitorService(db, policy).status()
    result["running"] = engine.scheduler.is_running(JobType.EXPIRATION_REFRESH)
    return result


@router.post(
    "/refresh",
    response_model=ExpirationRefreshResponse,
    responses={202: {"description": "Analysis started"}, 409: {"description": "Analysis already running"}},
)
async def refresh_expiration_analysis(
    body: Optional[ExpirationRefreshRequest] = None,
    wait: bool = Query(default=True, description="Wait for the analysis to finish"),
    engine: AnalysisEngine = Depends(get_analysis_engine),
):
    """Re-scan PS records and recompute expirations."""
    body = body or ExpirationRefreshRequest()
    summary = await start_job(
        lambda: engine.start_expiration_refresh(years_back=body.years_back, window_days=body.window),
        wait,
    )
    if summary is None:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=accepted(JobType.EXPIRATION_REFRESH.value).model_dump(by_alias=True),
        )

    return ExpirationRefreshResponse(
        records_analyzed=summary.records_scanned,
        expirations_found=summary.events_found,
        duration=round(summary.duration_seconds, 3),
        skipped=summary.records_skipped,
        status=summary.status.value,
        cancelled=summary.cancelled,
        first_error=summary.first_error,
    )
