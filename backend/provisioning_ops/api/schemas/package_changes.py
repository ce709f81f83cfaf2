"""
Package change analytics schemas.
"""

from typing import List, Optional

from pydantic import Field

from provisioning_ops.api.schemas.common import CamelModel


class PackageChangeSummaryResponse(CamelModel):
    time_frame: str
    total_changes: int
    upgrades: int
    downgrades: int
    unknown: int
    accounts_affected: int
    deployments_affected: int
    products_affected: int
    ps_records_with_changes: int


class ProductChangeCounts(CamelModel):
    product_code: str
    product_name: Optional[str] = None
    total_changes: int
    upgrades: int
    downgrades: int
    unknown: int


class ProductRollupResponse(ProductChangeCounts):
    accounts_affected: int
    deployments_affected: int


class DeploymentChanges(CamelModel):
    deployment_id: str
    total_changes: int
    upgrades: int
    downgrades: int
    unknown: int
    products: List[ProductChangeCounts]


class AccountChanges(CamelModel):
    account_id: str
    total_changes: int
    upgrades: int
    downgrades: int
    unknown: int
    deployments_affected: int
    products_affected: int
    deployments: List[DeploymentChanges]


class ByProductResponse(CamelModel):
    time_frame: str
    products: List[ProductRollupResponse]


class ByAccountResponse(CamelModel):
    time_frame: str
    accounts: List[AccountChanges]


class PackageChangeEvent(CamelModel):
    product_code: str
    product_name: Optional[str] = None
    previous_tier: str
    new_tier: str
    classification: str
    change_date: str
    record_id: str
    record_name: Optional[str] = None
    account_id: Optional[str] = None
    deployment_id: Optional[str] = None


class RecentChangesResponse(CamelModel):
    changes: List[PackageChangeEvent]


class PackageChangeRefreshRequest(CamelModel):
    years_back: float = Field(default=5, gt=0, le=20)
