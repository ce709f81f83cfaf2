"""
Diff engine - compares two snapshots and emits typed change events.

diff(prev, curr, tier_order):
- prev is None: exactly one "initial" status event, no package changes
- prev.status != curr.status: one "status_change" event
- package changes: for every product code present on both sides with a
  different package tier, one PackageChange classified through the tier
  order. Products only in curr are additions and products only in prev are
  removals; neither is a change event.

Classification policy:
- rank(new) > rank(old): upgrade
- rank(new) < rank(old): downgrade
- equal rank, different name: the configured tie policy (upgrade by default)
- either tier has no rank: "unknown". The ClassificationPolicyError is
  logged and converted; it never aborts a batch.

Output depends only on the two snapshots and the tier order. Package
changes are sorted by product code.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from provisioning_ops.config.analysis_policy import TIE_POLICY_DOWNGRADE, TIE_POLICY_UPGRADE
from provisioning_ops.errors import ClassificationPolicyError
from provisioning_ops.services.payload_normalizer import Entitlement
from provisioning_ops.services.snapshot_store import Snapshot

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    INITIAL = "initial"
    STATUS_CHANGE = "status_change"


class PackageChangeClassification(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    UNKNOWN = "unknown"


class TierOrder:
    """
    Total order over package tiers.

    Tier names are matched case-insensitively after trimming.
    """

    def __init__(self, ranks: Mapping[str, int], tie_policy: str = TIE_POLICY_UPGRADE):
        if tie_policy not in (TIE_POLICY_UPGRADE, TIE_POLICY_DOWNGRADE):
            raise ValueError(f"Unknown tie policy: {tie_policy!r}")
        self._ranks: Dict[str, int] = {self._key(k): int(v) for k, v in ranks.items()}
        self.tie_policy = tie_policy

    @staticmethod
    def _key(tier: str) -> str:
        return str(tier).strip().lower()

    def rank(self, tier: Optional[str]) -> Optional[int]:
        """Rank of a tier, or None if the tier is not configured."""
        if tier is None:
            return None
        return self._ranks.get(self._key(tier))

    def same_tier(self, a: Optional[str], b: Optional[str]) -> bool:
        """True when two tier names differ only in case or surrounding whitespace."""
        if a is None or b is None:
            return a is b
        return self._key(a) == self._key(b)

    def require_rank(self, tier: Optional[str]) -> int:
        rank = self.rank(tier)
        if rank is None:
            raise ClassificationPolicyError(tier)
        return rank

    def classify(self, previous_tier: str, new_tier: str) -> PackageChangeClassification:
        """
        Classify a tier transition.

        Raises:
            ClassificationPolicyError: if either tier has no rank
        """
        old_rank = self.require_rank(previous_tier)
        new_rank = self.require_rank(new_tier)
        if new_rank > old_rank:
            return PackageChangeClassification.UPGRADE
        if new_rank < old_rank:
            return PackageChangeClassification.DOWNGRADE
        # Equal rank, different name
        return PackageChangeClassification(self.tie_policy)

    def __len__(self) -> int:
        return len(self._ranks)


@dataclass(frozen=True)
class StatusChange:
    record_id: str
    previous_status: Optional[str]
    new_status: Optional[str]
    change_type: ChangeType
    detected_at: datetime
    snapshot_id: str


@dataclass(frozen=True)
class PackageChange:
    product_code: str
    previous_tier: str
    new_tier: str
    classification: PackageChangeClassification
    change_date: datetime
    record_id: str
    snapshot_id: str
    previous_snapshot_id: Optional[str] = None
    account_id: Optional[str] = None
    deployment_id: Optional[str] = None
    record_name: Optional[str] = None
    product_name: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "product_code": self.product_code,
            "product_name": self.product_name,
            "previous_tier": self.previous_tier,
            "new_tier": self.new_tier,
            "classification": self.classification.value,
            "change_date": self.change_date.isoformat(),
            "record_id": self.record_id,
            "record_name": self.record_name,
            "account_id": self.account_id,
            "deployment_id": self.deployment_id,
        }


@dataclass(frozen=True)
class SnapshotDiff:
    status_change: Optional[StatusChange] = None
    package_changes: Tuple[PackageChange, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return self.status_change is None and not self.package_changes

    @property
    def event_count(self) -> int:
        return (1 if self.status_change else 0) + len(self.package_changes)


def _tier_map(
    entitlements: Tuple[Entitlement, ...], tier_order: TierOrder
) -> Dict[str, Entitlement]:
    """
    product code -> entitlement carrying the tier.

    Entitlements without a tier are left out. When a code repeats, the
    highest-ranked tier wins; unranked tiers lose to ranked ones and ties
    fall back to the tier name so the result does not depend on payload
    order.
    """
    by_code: Dict[str, Entitlement] = {}
    for ent in entitlements:
        if not ent.package_tier:
            continue
        current = by_code.get(ent.product_code)
        if current is None or _tier_sort_key(ent, tier_order) > _tier_sort_key(current, tier_order):
            by_code[ent.product_code] = ent
    return by_code


def _tier_sort_key(ent: Entitlement, tier_order: TierOrder) -> Tuple[int, int, str]:
    rank = tier_order.rank(ent.package_tier)
    return (0 if rank is None else 1, rank or 0, ent.package_tier or "")


def diff_packages(
    prev: Snapshot,
    curr: Snapshot,
    tier_order: TierOrder,
) -> List[PackageChange]:
    """
    Package tier changes between two snapshots.

    prev may belong to a different record of the same deployment (a
    deployment's Update record compared against its predecessor).
    """
    previous = _tier_map(prev.entitlements, tier_order)
    current = _tier_map(curr.entitlements, tier_order)

    changes: List[PackageChange] = []
    for code in sorted(set(previous) & set(current)):
        old = previous[code]
        new = current[code]
        if tier_order.same_tier(old.package_tier, new.package_tier):
            continue

        try:
            classification = tier_order.classify(old.package_tier, new.package_tier)
        except ClassificationPolicyError as e:
            logger.warning(
                "diff_engine.unranked_tier",
                extra={
                    "record_id": curr.record_id,
                    "product_code": code,
                    "tier": e.tier,
                },
            )
            classification = PackageChangeClassification.UNKNOWN

        changes.append(
            PackageChange(
                product_code=code,
                previous_tier=old.package_tier,
                new_tier=new.package_tier,
                classification=classification,
                change_date=curr.captured_at,
                record_id=curr.record_id,
                snapshot_id=curr.id,
                previous_snapshot_id=prev.id,
                account_id=curr.account_id,
                deployment_id=curr.deployment_id,
                record_name=curr.record_name,
                product_name=new.product_name or old.product_name,
            )
        )
    return changes


def diff(
    prev: Optional[Snapshot],
    curr: Snapshot,
    tier_order: TierOrder,
) -> SnapshotDiff:
    """Compare consecutive snapshots of the same record."""
    if prev is None:
        return SnapshotDiff(
            status_change=StatusChange(
                record_id=curr.record_id,
                previous_status=None,
                new_status=curr.status,
                change_type=ChangeType.INITIAL,
                detected_at=curr.captured_at,
                snapshot_id=curr.id,
            )
        )

    if prev.record_id != curr.record_id:
        raise ValueError(
            f"diff() compares snapshots of one record, got {prev.record_id} and {curr.record_id}"
        )

    status_change = None
    if prev.status != curr.status:
        status_change = StatusChange(
            record_id=curr.record_id,
            previous_status=prev.status,
            new_status=curr.status,
            change_type=ChangeType.STATUS_CHANGE,
            detected_at=curr.captured_at,
            snapshot_id=curr.id,
        )

    return SnapshotDiff(
        status_change=status_change,
        package_changes=tuple(diff_packages(prev, curr, tier_order)),
    )
