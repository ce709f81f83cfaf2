"""
Expiration monitor schemas.
"""

from typing import List, Optional

from pydantic import Field

from provisioning_ops.api.schemas.common import CamelModel


class ExpiringProduct(CamelModel):
    product_code: str
    product_name: Optional[str] = None
    category: str
    package_tier: Optional[str] = None
    expiry: Optional[str] = None
    status: str
    days_until_expiry: Optional[int] = None
    is_extended: bool = False
    extended_until: Optional[str] = None


class ProductGroups(CamelModel):
    models: List[ExpiringProduct] = Field(default_factory=list)
    data: List[ExpiringProduct] = Field(default_factory=list)
    apps: List[ExpiringProduct] = Field(default_factory=list)


class AccountRef(CamelModel):
    id: Optional[str] = None


class PSRecordRef(CamelModel):
    id: str
    name: Optional[str] = None
    deployment_id: Optional[str] = None


class ExpirationItem(CamelModel):
    account: AccountRef
    ps_record: PSRecordRef
    status: str
    earliest_expiry: str
    days_until_expiry: int
    products: ProductGroups


class ExpirationSummary(CamelModel):
    total_expiring: int = 0
    at_risk: int = 0
    upcoming: int = 0
    current: int = 0
    extended: int = 0
    accounts_affected: int = 0


class ExpirationMonitorResponse(CamelModel):
    summary: ExpirationSummary
    expirations: List[ExpirationItem]
    expiration_window: int
    last_analyzed: Optional[str] = None


class ExpirationRefreshRequest(CamelModel):
    years_back: float = Field(default=5, gt=0, le=20)
    window: Optional[int] = Field(default=None, ge=0, le=3650)


class ExpirationRefreshResponse(CamelModel):
    records_analyzed: int
    expirations_found: int
    duration: float
    skipped: int
    status: str
    cancelled: bool = False
    first_error: Optional[str] = None


class AnalysisStatusResponse(CamelModel):
    has_analysis: bool
    analysis: Optional[dict] = None
    age: Optional[str] = None
    running: bool = False
