"""
Ghost account schemas.
"""

from typing import List, Optional

from pydantic import Field

from provisioning_ops.api.schemas.common import CamelModel


class GhostAccountResponse(CamelModel):
    account_id: str
    latest_expiry: str
    total_expired_products: int
    deployment_count: int
    review_status: str
    is_reviewed: bool
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    notes: Optional[str] = None
    last_checked: Optional[str] = None


class GhostAccountSummary(CamelModel):
    total_ghost_accounts: int
    unreviewed: int
    reviewed: int


class GhostAccountListResponse(CamelModel):
    ghost_accounts: List[GhostAccountResponse]
    summary: GhostAccountSummary


class ReviewRequest(CamelModel):
    reviewed_by: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=4000)


class ExpiredProduct(CamelModel):
    product_code: str
    product_name: Optional[str] = None
    category: str
    package_tier: Optional[str] = None
    expiry: Optional[str] = None


class GhostAccountProductsResponse(CamelModel):
    account_id: str
    products: List[ExpiredProduct]
