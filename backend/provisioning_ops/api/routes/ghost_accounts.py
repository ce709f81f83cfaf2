"""
Ghost account API routes.

Provides:
- GET /api/ghost-accounts - Flagged accounts with review state and summary
- GET /api/ghost-accounts/{account_id}/products - Expired products drill-down
- POST /api/ghost-accounts/refresh - Re-scan and recompute flags
- POST /api/ghost-accounts/{account_id}/review - Mark as reviewed (idempotent)
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from provisioning_ops.api.dependencies.engine import get_analysis_engine, get_analysis_policy
from provisioning_ops.api.dependencies.errors import to_http_error
from provisioning_ops.api.dependencies.jobs import accepted, start_job
from provisioning_ops.api.schemas.common import RunSummaryResponse
from provisioning_ops.api.schemas.ghost_accounts import (
    GhostAccountListResponse,
    GhostAccountProductsResponse,
    GhostAccountResponse,
    ReviewRequest,
)
from provisioning_ops.config.analysis_policy import AnalysisPolicy
from provisioning_ops.database.session import get_db_session
from provisioning_ops.errors import RecordNotFoundError
from provisioning_ops.services.analysis_engine import AnalysisEngine
from provisioning_ops.services.analysis_scheduler import JobType
from provisioning_ops.services.ghost_account_detector import GhostAccountService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ghost-accounts", tags=["ghost-accounts"])


def _service(db: Session, policy: AnalysisPolicy) -> GhostAccountService:
    return GhostAccountService(db, policy.ghost_excluded_request_types)


@router.get("", response_model=GhostAccountListResponse)
async def list_ghost_accounts(
    account_search: Optional[str] = Query(default=None, alias="accountSearch"),
    is_reviewed: Optional[bool] = Query(default=None, alias="isReviewed"),
    product_codes: Optional[str] = Query(
        default=None, alias="productCodes", description="Comma-separated product codes"
    ),
    db: Session = Depends(get_db_session),
    policy: AnalysisPolicy = Depends(get_analysis_policy),
):
    codes: Optional[List[str]] = None
    if product_codes:
        codes = [c.strip() for c in product_codes.split(",") if c.strip()]

    service = _service(db, policy)
    flags = service.list_accounts(
        account_search=account_search,
        is_reviewed=is_reviewed,
        product_codes=codes,
    )
    return {
        "ghost_accounts": [f.to_dict() for f in flags],
        "summary": service.summary(),
    }


@router.get("/{account_id}/products", response_model=GhostAccountProductsResponse)
async def get_ghost_account_products(
    account_id: str,
    db: Session = Depends(get_db_session),
    policy: AnalysisPolicy = Depends(get_analysis_policy),
):
    try:
        products = _service(db, policy).expired_products(account_id)
    except RecordNotFoundError as e:
        raise to_http_error(e)
    return {"account_id": account_id, "products": products}


@router.post(
    "/refresh",
    response_model=RunSummaryResponse,
    responses={202: {"description": "Analysis started"}, 409: {"description": "Analysis already running"}},
)
async def refresh_ghost_accounts(
    years_back: float = Query(default=5, gt=0, le=20, alias="yearsBack"),
    wait: bool = Query(default=True),
    engine: AnalysisEngine = Depends(get_analysis_engine),
):
    summary = await start_job(lambda: engine.start_ghost_account_refresh(years_back), wait)
    if summary is None:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=accepted(JobType.GHOST_ACCOUNT_REFRESH.value).model_dump(by_alias=True),
        )
    return summary.to_dict()


@router.post("/{account_id}/review", response_model=GhostAccountResponse)
async def review_ghost_account(
    account_id: str,
    body: Optional[ReviewRequest] = None,
    db: Session = Depends(get_db_session),
    policy: AnalysisPolicy = Depends(get_analysis_policy),
):
    """Mark a ghost account as reviewed. Repeating the call is a no-op."""
    body = body or ReviewRequest()
    try:
        flag = _service(db, policy).mark_reviewed(
            account_id, reviewed_by=body.reviewed_by, notes=body.notes
        )
    except RecordNotFoundError as e:
        raise to_http_error(e)
    return flag.to_dict()
