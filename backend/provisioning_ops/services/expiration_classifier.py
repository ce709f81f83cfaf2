"""
Expiration classifier.

Buckets entitlements by how soon they expire relative to an evaluation
instant and a lookahead window:

    days = floor((expiry - as_of) / 1 day)

    at-risk   days < 0 (already expired) or days <= min(at_risk_days, window)
    upcoming  0 <= days <= window
    current   everything else, and always for perpetual entitlements

classify() is a pure function of (entitlements, window_days, as_of, policy)
so a refresh and a redisplay of the same data always agree.

build_expiration_report() runs the classifier over the latest snapshot of
every PS record and applies the cross-record rules of the monitor:
- within a record, the latest end date of a product wins
- an expiring product that a later record of the same deployment no longer
  carries has been removed, not left to expire
- an expiring product is "extended" when another record of the same
  account holds the same product with a later end date
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from provisioning_ops.config.analysis_policy import AnalysisPolicy
from provisioning_ops.services.payload_normalizer import Entitlement, EntitlementCategory
from provisioning_ops.services.snapshot_store import Snapshot, record_sort_key


class ExpirationStatus(str, Enum):
    AT_RISK = "at-risk"
    UPCOMING = "upcoming"
    CURRENT = "current"


_SEVERITY = {
    ExpirationStatus.CURRENT: 0,
    ExpirationStatus.UPCOMING: 1,
    ExpirationStatus.AT_RISK: 2,
}

# Category -> drill-down group name
PRODUCT_GROUPS = {
    EntitlementCategory.MODEL: "models",
    EntitlementCategory.DATA: "data",
    EntitlementCategory.APP: "apps",
}

_SECONDS_PER_DAY = 86400


def days_until(expiry: datetime, as_of: datetime) -> int:
    """Whole days from as_of to expiry, rounded down (negative once expired)."""
    return math.floor((expiry - as_of).total_seconds() / _SECONDS_PER_DAY)


def bucket(days: Optional[int], window_days: int, at_risk_days: int) -> ExpirationStatus:
    if days is None:
        return ExpirationStatus.CURRENT
    if days < 0 or days <= min(at_risk_days, window_days):
        return ExpirationStatus.AT_RISK
    if days <= window_days:
        return ExpirationStatus.UPCOMING
    return ExpirationStatus.CURRENT


@dataclass(frozen=True)
class ClassifiedEntitlement:
    entitlement: Entitlement
    status: ExpirationStatus
    days_until_expiry: Optional[int]
    is_extended: bool = False
    extended_until: Optional[datetime] = None

    @property
    def is_expiring(self) -> bool:
        return self.status != ExpirationStatus.CURRENT

    def to_dict(self) -> Dict:
        ent = self.entitlement
        return {
            "product_code": ent.product_code,
            "product_name": ent.product_name,
            "category": ent.category.value,
            "package_tier": ent.package_tier,
            "expiry": ent.expiry.isoformat() if ent.expiry else None,
            "status": self.status.value,
            "days_until_expiry": self.days_until_expiry,
            "is_extended": self.is_extended,
            "extended_until": self.extended_until.isoformat() if self.extended_until else None,
        }


@dataclass
class ExpirationClassification:
    """Classified entitlements of one record."""

    items: List[ClassifiedEntitlement] = field(default_factory=list)

    @property
    def expiring(self) -> List[ClassifiedEntitlement]:
        return [i for i in self.items if i.is_expiring]

    @property
    def status(self) -> ExpirationStatus:
        """Worst bucket across the record."""
        worst = ExpirationStatus.CURRENT
        for item in self.items:
            if _SEVERITY[item.status] > _SEVERITY[worst]:
                worst = item.status
        return worst

    @property
    def earliest_expiry(self) -> Optional[datetime]:
        """Earliest expiry among at-risk and upcoming entitlements."""
        expiries = [i.entitlement.expiry for i in self.expiring]
        return min(expiries) if expiries else None

    @property
    def days_until_expiry(self) -> Optional[int]:
        days = [i.days_until_expiry for i in self.expiring]
        return min(days) if days else None

    def products(self) -> Dict[str, List[Dict]]:
        """Expiring products grouped for drill-down."""
        grouped: Dict[str, List[Dict]] = {name: [] for name in PRODUCT_GROUPS.values()}
        for item in self.expiring:
            grouped[PRODUCT_GROUPS[item.entitlement.category]].append(item.to_dict())
        return grouped


def classify(
    entitlements: Iterable[Entitlement],
    window_days: int,
    as_of: datetime,
    policy: Optional[AnalysisPolicy] = None,
) -> ExpirationClassification:
    """
    Bucket each entitlement.

    Args:
        entitlements: canonical entitlements of one record
        window_days: lookahead window in days
        as_of: evaluation instant (timezone-aware)
        policy: supplies the at-risk threshold; defaults apply when omitted
    """
    if window_days < 0:
        raise ValueError("window_days must be >= 0")
    at_risk_days = (policy or AnalysisPolicy()).at_risk_days

    items = []
    for ent in entitlements:
        days = days_until(ent.expiry, as_of) if ent.expiry is not None else None
        items.append(
            ClassifiedEntitlement(
                entitlement=ent,
                status=bucket(days, window_days, at_risk_days),
                days_until_expiry=days,
            )
        )
    return ExpirationClassification(items=items)


def collapse_by_product(entitlements: Iterable[Entitlement]) -> List[Entitlement]:
    """
    One entitlement per (category, product code), keeping the latest end date.

    A perpetual line item outranks any dated one. First-seen order is kept.
    """
    chosen: Dict[Tuple[EntitlementCategory, str], Entitlement] = {}
    for ent in entitlements:
        key = (ent.category, ent.product_code)
        current = chosen.get(key)
        if current is None:
            chosen[key] = ent
        elif current.expiry is not None and (ent.expiry is None or ent.expiry > current.expiry):
            chosen[key] = ent
    return list(chosen.values())


@dataclass(frozen=True)
class ExpirationEntry:
    """One PS record with at least one visible expiring product."""

    account_id: Optional[str]
    record_id: str
    record_name: Optional[str]
    deployment_id: Optional[str]
    status: ExpirationStatus
    earliest_expiry: datetime
    days_until_expiry: int
    classification: ExpirationClassification


@dataclass
class ExpirationReport:
    window_days: int
    as_of: datetime
    entries: List[ExpirationEntry] = field(default_factory=list)
    current_records: int = 0
    extended_items: int = 0

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "total_expiring": len(self.entries),
            "at_risk": sum(1 for e in self.entries if e.status == ExpirationStatus.AT_RISK),
            "upcoming": sum(1 for e in self.entries if e.status == ExpirationStatus.UPCOMING),
            "current": self.current_records,
            "extended": self.extended_items,
            "accounts_affected": len({e.account_id for e in self.entries}),
        }


def _latest_code_expiry(snapshots: Sequence[Snapshot]) -> Dict[Tuple[str, str], Optional[datetime]]:
    """(account, product code) -> latest end date across records; None = perpetual."""
    latest: Dict[Tuple[str, str], Optional[datetime]] = {}
    for snap in snapshots:
        for ent in snap.entitlements:
            key = (snap.account_key, ent.product_code)
            if key not in latest:
                latest[key] = ent.expiry
            elif latest[key] is not None and (ent.expiry is None or ent.expiry > latest[key]):
                latest[key] = ent.expiry
    return latest


def _removed_codes(snapshots: Sequence[Snapshot]) -> Dict[str, Set[str]]:
    """record id -> product codes the deployment's most recent record no longer has."""
    by_deployment: Dict[str, List[Snapshot]] = {}
    for snap in snapshots:
        if snap.deployment_id:
            by_deployment.setdefault(snap.deployment_id, []).append(snap)

    removed: Dict[str, Set[str]] = {}
    for records in by_deployment.values():
        records = sorted(records, key=record_sort_key)
        newest_codes = {e.product_code for e in records[-1].entitlements}
        for snap in records[:-1]:
            gone = {e.product_code for e in snap.entitlements} - newest_codes
            if gone:
                removed[snap.record_id] = gone
    return removed


def build_expiration_report(
    snapshots: Sequence[Snapshot],
    window_days: int,
    as_of: datetime,
    policy: Optional[AnalysisPolicy] = None,
    include_extended: bool = False,
) -> ExpirationReport:
    """
    Expiration monitor over the latest snapshot of each PS record.

    Entries are ordered by earliest expiry, then account, then record.
    """
    latest_expiry = _latest_code_expiry(snapshots)
    removed = _removed_codes(snapshots)
    report = ExpirationReport(window_days=window_days, as_of=as_of)

    for snap in snapshots:
        gone = removed.get(snap.record_id, set())
        kept = [e for e in collapse_by_product(snap.entitlements) if e.product_code not in gone]
        result = classify(kept, window_days, as_of, policy)

        visible = []
        for item in result.items:
            if item.is_expiring:
                best = latest_expiry.get((snap.account_key, item.entitlement.product_code))
                if best is None or best > item.entitlement.expiry:
                    item = ClassifiedEntitlement(
                        entitlement=item.entitlement,
                        status=item.status,
                        days_until_expiry=item.days_until_expiry,
                        is_extended=True,
                        extended_until=best,
                    )
                    report.extended_items += 1
                    if not include_extended:
                        continue
            visible.append(item)

        shown = ExpirationClassification(items=visible)
        if not shown.expiring:
            if any(e.expiry is not None for e in kept):
                report.current_records += 1
            continue

        report.entries.append(
            ExpirationEntry(
                account_id=snap.account_id,
                record_id=snap.record_id,
                record_name=snap.record_name,
                deployment_id=snap.deployment_id,
                status=shown.status,
                earliest_expiry=shown.earliest_expiry,
                days_until_expiry=shown.days_until_expiry,
                classification=shown,
            )
        )

    report.entries.sort(
        key=lambda e: (e.earliest_expiry, e.account_id or "", e.record_name or "", e.record_id)
    )
    return report
