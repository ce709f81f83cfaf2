"""
PS audit trail API routes.

Provides:
- GET /api/audit-trail/search?q= - Find records by id, name or account
- GET /api/audit-trail/stats - Snapshot and status change totals
- GET /api/audit-trail/{record_id} - Snapshot timeline of a record
- GET /api/audit-trail/{record_id}/status-changes - Status transitions
- POST /api/audit-trail/capture - Run the light capture now

{record_id} accepts a record id or a record name (PS-12345).
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from provisioning_ops.api.dependencies.engine import get_analysis_engine
from provisioning_ops.api.dependencies.errors import to_http_error
from provisioning_ops.api.dependencies.jobs import accepted, start_job
from provisioning_ops.api.schemas.audit_trail import (
    AuditSearchResponse,
    AuditStatsResponse,
    AuditTimelineResponse,
    StatusChangesResponse,
)
from provisioning_ops.api.schemas.common import RunSummaryResponse
from provisioning_ops.database.session import get_db_session
from provisioning_ops.errors import RecordNotFoundError
from provisioning_ops.services.analysis_engine import AnalysisEngine
from provisioning_ops.services.analysis_scheduler import JobType
from provisioning_ops.services.audit_trail_service import AuditTrailService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/audit-trail", tags=["audit-trail"])


@router.get("/search", response_model=AuditSearchResponse)
async def search_records(
    q: str = Query(..., min_length=1, max_length=255),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db_session),
):
    return {"query": q, "results": AuditTrailService(db).search(q, limit=limit)}


@router.get("/stats", response_model=AuditStatsResponse)
async def get_stats(db: Session = Depends(get_db_session)):
    return AuditTrailService(db).stats()


@router.post(
    "/capture",
    response_model=RunSummaryResponse,
    responses={202: {"description": "Capture started"}, 409: {"description": "Capture already running"}},
)
async def trigger_capture(
    years_back: float = Query(default=1, gt=0, le=20, alias="yearsBack"),
    wait: bool = Query(default=True),
    engine: AnalysisEngine = Depends(get_analysis_engine),
):
    """Manual trigger of the periodic capture for all records."""
    summary = await start_job(lambda: engine.start_capture(years_back), wait)
    if summary is None:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=accepted(JobType.AUDIT_CAPTURE.value).model_dump(by_alias=True),
        )
    return summary.to_dict()


@router.get("/{record_id}", response_model=AuditTimelineResponse)
async def get_timeline(
    record_id: str,
    from_time: Optional[datetime] = Query(default=None, alias="from"),
    to_time: Optional[datetime] = Query(default=None, alias="to"),
    db: Session = Depends(get_db_session),
):
    try:
        return AuditTrailService(db).timeline(record_id, from_time, to_time)
    except RecordNotFoundError as e:
        raise to_http_error(e)


@router.get("/{record_id}/status-changes", response_model=StatusChangesResponse)
async def get_status_changes(
    record_id: str,
    db: Session = Depends(get_db_session),
):
    try:
        return AuditTrailService(db).status_changes(record_id)
    except RecordNotFoundError as e:
        raise to_http_error(e)
