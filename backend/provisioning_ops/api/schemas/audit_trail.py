"""
PS audit trail schemas.
"""

from typing import Dict, List, Optional

from provisioning_ops.api.schemas.common import CamelModel


class AuditSearchResult(CamelModel):
    record_id: str
    record_name: Optional[str] = None
    account_id: Optional[str] = None
    deployment_id: Optional[str] = None
    request_type: Optional[str] = None
    status: Optional[str] = None
    last_captured_at: Optional[str] = None
    snapshot_count: int


class AuditSearchResponse(CamelModel):
    query: str
    results: List[AuditSearchResult]


class StatusChangeResponse(CamelModel):
    record_id: str
    snapshot_id: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    change_type: str
    detected_at: Optional[str] = None


class TimelinePackageChange(CamelModel):
    product_code: str
    product_name: Optional[str] = None
    previous_tier: str
    new_tier: str
    classification: str


class TimelineEntitlement(CamelModel):
    product_code: str
    category: str
    package_tier: Optional[str] = None
    expiry: Optional[str] = None
    product_name: Optional[str] = None
    start_date: Optional[str] = None


class TimelineEntry(CamelModel):
    snapshot_id: str
    status: Optional[str] = None
    captured_at: Optional[str] = None
    request_type: Optional[str] = None
    fingerprint: str
    entitlement_counts: Dict[str, int]
    entitlements: List[TimelineEntitlement]
    status_change: Optional[StatusChangeResponse] = None
    package_changes: List[TimelinePackageChange]


class AuditTimelineResponse(CamelModel):
    record_id: str
    record_name: Optional[str] = None
    snapshot_count: int
    snapshots: List[TimelineEntry]


class StatusChangesResponse(CamelModel):
    record_id: str
    status_changes: List[StatusChangeResponse]


class AuditStatsResponse(CamelModel):
    total_records: int
    total_snapshots: int
    total_status_changes: int
    earliest_snapshot: Optional[str] = None
    latest_snapshot: Optional[str] = None
