"""
Package change analytics API routes.

Provides:
- GET /api/package-changes/summary - Totals for a time frame
- GET /api/package-changes/by-product - Changes per product
- GET /api/package-changes/by-account - Account -> deployment -> product hierarchy
- GET /api/package-changes/recent - Latest change events
- POST /api/package-changes/refresh - Re-scan PS records

timeFrame accepts 30d, 90d, 6m, 1y, 2y (any <n><d|w|m|y>) or "all".
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from provisioning_ops.api.dependencies.engine import get_analysis_engine, get_analysis_policy
from provisioning_ops.api.dependencies.jobs import accepted, start_job
from provisioning_ops.api.schemas.common import RunSummaryResponse
from provisioning_ops.api.schemas.package_changes import (
    ByAccountResponse,
    ByProductResponse,
    PackageChangeRefreshRequest,
    PackageChangeSummaryResponse,
    RecentChangesResponse,
)
from provisioning_ops.config.analysis_policy import AnalysisPolicy
from provisioning_ops.database.session import get_db_session
from provisioning_ops.services.analysis_engine import AnalysisEngine
from provisioning_ops.services.analysis_scheduler import JobType
from provisioning_ops.services.package_change_aggregator import PackageChangeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/package-changes", tags=["package-changes"])

SortBy = Literal["total", "upgrades", "downgrades", "name"]


def _service(db: Session, policy: AnalysisPolicy) -> PackageChangeService:
    return PackageChangeService(db, default_time_frame=policy.default_time_frame)


def _invalid_time_frame(e: ValueError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"error": "invalid_time_frame", "message": str(e)},
    )


@router.get("/summary", response_model=PackageChangeSummaryResponse)
async def get_summary(
    time_frame: Optional[str] = Query(default=None, alias="timeFrame"),
    db: Session = Depends(get_db_session),
    policy: AnalysisPolicy = Depends(get_analysis_policy),
):
    try:
        return _service(db, policy).summary(time_frame)
    except ValueError as e:
        raise _invalid_time_frame(e)


@router.get("/by-product", response_model=ByProductResponse)
async def get_by_product(
    time_frame: Optional[str] = Query(default=None, alias="timeFrame"),
    sort_by: SortBy = Query(default="total", alias="sortBy"),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    db: Session = Depends(get_db_session),
    policy: AnalysisPolicy = Depends(get_analysis_policy),
):
    service = _service(db, policy)
    time_frame = time_frame or service.default_time_frame
    try:
        rollups = service.by_product(time_frame, sort_by=sort_by, limit=limit)
    except ValueError as e:
        raise _invalid_time_frame(e)

    return {
        "time_frame": time_frame,
        "products": [
            {
                "product_code": r.product_code,
                "product_name": r.product_name,
                **r.counts.to_dict(),
                "accounts_affected": len(r.accounts),
                "deployments_affected": len(r.deployments),
            }
            for r in rollups
        ],
    }


@router.get("/by-account", response_model=ByAccountResponse)
async def get_by_account(
    time_frame: Optional[str] = Query(default=None, alias="timeFrame"),
    sort_by: SortBy = Query(default="total", alias="sortBy"),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    db: Session = Depends(get_db_session),
    policy: AnalysisPolicy = Depends(get_analysis_policy),
):
    service = _service(db, policy)
    time_frame = time_frame or service.default_time_frame
    try:
        hierarchy = service.by_account(time_frame, sort_by=sort_by, limit=limit)
    except ValueError as e:
        raise _invalid_time_frame(e)
    return {"time_frame": time_frame, "accounts": hierarchy.to_dict()}


@router.get("/recent", response_model=RecentChangesResponse)
async def get_recent(
    limit: int = Query(default=20, ge=1, le=500),
    db: Session = Depends(get_db_session),
    policy: AnalysisPolicy = Depends(get_analysis_policy),
):
    changes = _service(db, policy).recent(limit)
    return {"changes": [c.to_dict() for c in changes]}


@router.post(
    "/refresh",
    response_model=RunSummaryResponse,
    responses={202: {"description": "Analysis started"}, 409: {"description": "Analysis already running"}},
)
async def refresh_package_changes(
    body: Optional[PackageChangeRefreshRequest] = None,
    wait: bool = Query(default=True),
    engine: AnalysisEngine = Depends(get_analysis_engine),
):
    """Re-scan PS records and record package changes."""
    body = body or PackageChangeRefreshRequest()
    summary = await start_job(
        lambda: engine.start_package_change_refresh(years_back=body.years_back),
        wait,
    )
    if summary is None:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=accepted(JobType.PACKAGE_CHANGE_REFRESH.value).model_dump(by_alias=True),
        )
    return summary.to_dict()
