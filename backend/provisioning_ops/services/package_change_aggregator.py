"""
Package-change aggregator.

Rolls package change events up into account -> deployment -> product with
total, upgrade, downgrade and unknown counts at every level, plus distinct
deployment counts per account and distinct account counts per product.

Ordering at each level is a total order: the chosen count descending, ties
broken by name, so repeated queries page identically.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from provisioning_ops.models.base import ensure_utc, utc_now
from provisioning_ops.models.change_events import PackageChangeRecord
from provisioning_ops.services.diff_engine import PackageChange, PackageChangeClassification

TIME_FRAME_ALL = "all"
_TIME_FRAME = re.compile(r"^(\d+)([dwmy])$")
_UNIT_DAYS = {"d": 1, "w": 7, "m": 30, "y": 365}

SORT_KEYS = ("total", "upgrades", "downgrades", "name")


def parse_time_frame(time_frame: str, as_of: datetime) -> Optional[datetime]:
    """
    Start of a time frame such as "30d", "6m" or "1y"; None for "all".

    Raises:
        ValueError: on an unrecognised label
    """
    label = (time_frame or "").strip().lower()
    if label == TIME_FRAME_ALL:
        return None
    match = _TIME_FRAME.match(label)
    if not match:
        raise ValueError(f"Invalid time frame: {time_frame!r}")
    amount, unit = int(match.group(1)), match.group(2)
    return as_of - timedelta(days=amount * _UNIT_DAYS[unit])


@dataclass
class ChangeCounts:
    total: int = 0
    upgrades: int = 0
    downgrades: int = 0
    unknown: int = 0

    def add(self, classification: PackageChangeClassification) -> None:
        self.total += 1
        if classification == PackageChangeClassification.UPGRADE:
            self.upgrades += 1
        elif classification == PackageChangeClassification.DOWNGRADE:
            self.downgrades += 1
        else:
            self.unknown += 1

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_changes": self.total,
            "upgrades": self.upgrades,
            "downgrades": self.downgrades,
            "unknown": self.unknown,
        }


@dataclass
class ProductNode:
    product_code: str
    product_name: Optional[str] = None
    counts: ChangeCounts = field(default_factory=ChangeCounts)
    changes: List[PackageChange] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.product_code


@dataclass
class DeploymentNode:
    deployment_id: str
    counts: ChangeCounts = field(default_factory=ChangeCounts)
    products: Dict[str, ProductNode] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.deployment_id


@dataclass
class AccountNode:
    account_id: str
    counts: ChangeCounts = field(default_factory=ChangeCounts)
    deployments: Dict[str, DeploymentNode] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.account_id

    @property
    def deployment_count(self) -> int:
        return len(self.deployments)

    @property
    def product_count(self) -> int:
        return len({code for d in self.deployments.values() for code in d.products})


@dataclass
class ProductRollup:
    product_code: str
    product_name: Optional[str] = None
    counts: ChangeCounts = field(default_factory=ChangeCounts)
    accounts: Set[str] = field(default_factory=set)
    deployments: Set[str] = field(default_factory=set)

    @property
    def name(self) -> str:
        return self.product_code


def _sort_nodes(nodes: Iterable[Any], sort_by: str) -> List[Any]:
    if sort_by not in SORT_KEYS:
        raise ValueError(f"sort_by must be one of {SORT_KEYS}, got {sort_by!r}")
    if sort_by == "name":
        return sorted(nodes, key=lambda n: n.name)
    return sorted(nodes, key=lambda n: (-getattr(n.counts, sort_by), n.name))


def filter_time_frame(
    events: Iterable[PackageChange], time_frame: str, as_of: datetime
) -> List[PackageChange]:
    start = parse_time_frame(time_frame, as_of)
    return [
        e for e in events
        if (start is None or e.change_date >= start) and e.change_date <= as_of
    ]


@dataclass
class PackageChangeHierarchy:
    time_frame: str
    accounts: List[AccountNode] = field(default_factory=list)

    def to_dict(self, include_changes: bool = False) -> List[Dict[str, Any]]:
        out = []
        for account in self.accounts:
            out.append({
                "account_id": account.account_id,
                **account.counts.to_dict(),
                "deployments_affected": account.deployment_count,
                "products_affected": account.product_count,
                "deployments": [
                    {
                        "deployment_id": deployment.deployment_id,
                        **deployment.counts.to_dict(),
                        "products": [
                            {
                                "product_code": product.product_code,
                                "product_name": product.product_name,
                                **product.counts.to_dict(),
                                **(
                                    {"changes": [c.to_dict() for c in product.changes]}
                                    if include_changes
                                    else {}
                                ),
                            }
                            for product in deployment.products.values()
                        ],
                    }
                    for deployment in account.deployments.values()
                ],
            })
        return out


def aggregate(
    events: Iterable[PackageChange],
    time_frame: str,
    as_of: Optional[datetime] = None,
    sort_by: str = "total",
) -> PackageChangeHierarchy:
    """Group events by account -> deployment -> product."""
    as_of = as_of or utc_now()
    accounts: Dict[str, AccountNode] = {}

    for event in filter_time_frame(events, time_frame, as_of):
        account_id = event.account_id or "unknown"
        deployment_id = event.deployment_id or f"record:{event.record_id}"

        account = accounts.setdefault(account_id, AccountNode(account_id=account_id))
        deployment = account.deployments.setdefault(
            deployment_id, DeploymentNode(deployment_id=deployment_id)
        )
        product = deployment.products.setdefault(
            event.product_code,
            ProductNode(product_code=event.product_code, product_name=event.product_name),
        )

        account.counts.add(event.classification)
        deployment.counts.add(event.classification)
        product.counts.add(event.classification)
        product.changes.append(event)

    ordered = _sort_nodes(accounts.values(), sort_by)
    for account in ordered:
        account.deployments = {
            d.deployment_id: d for d in _sort_nodes(account.deployments.values(), sort_by)
        }
        for deployment in account.deployments.values():
            deployment.products = {
                p.product_code: p for p in _sort_nodes(deployment.products.values(), sort_by)
            }
            for product in deployment.products.values():
                product.changes.sort(key=lambda c: (c.change_date, c.record_id))

    return PackageChangeHierarchy(time_frame=time_frame, accounts=ordered)


def by_product(
    events: Iterable[PackageChange],
    time_frame: str,
    as_of: Optional[datetime] = None,
    sort_by: str = "total",
) -> List[ProductRollup]:
    """Product view with distinct affected accounts and deployments."""
    as_of = as_of or utc_now()
    products: Dict[str, ProductRollup] = {}
    for event in filter_time_frame(events, time_frame, as_of):
        rollup = products.setdefault(
            event.product_code,
            ProductRollup(product_code=event.product_code, product_name=event.product_name),
        )
        rollup.counts.add(event.classification)
        rollup.accounts.add(event.account_id or "unknown")
        rollup.deployments.add(event.deployment_id or f"record:{event.record_id}")
    return _sort_nodes(products.values(), sort_by)


def summary(
    events: Iterable[PackageChange],
    time_frame: str,
    as_of: Optional[datetime] = None,
) -> Dict[str, Any]:
    as_of = as_of or utc_now()
    counts = ChangeCounts()
    accounts: Set[str] = set()
    deployments: Set[str] = set()
    products: Set[str] = set()
    records: Set[str] = set()

    for event in filter_time_frame(events, time_frame, as_of):
        counts.add(event.classification)
        accounts.add(event.account_id or "unknown")
        deployments.add(event.deployment_id or f"record:{event.record_id}")
        products.add(event.product_code)
        records.add(event.record_id)

    return {
        "time_frame": time_frame,
        **counts.to_dict(),
        "accounts_affected": len(accounts),
        "deployments_affected": len(deployments),
        "products_affected": len(products),
        "ps_records_with_changes": len(records),
    }


def record_to_change(row: PackageChangeRecord) -> PackageChange:
    return PackageChange(
        product_code=row.product_code,
        previous_tier=row.previous_tier,
        new_tier=row.new_tier,
        classification=PackageChangeClassification(row.classification),
        change_date=ensure_utc(row.change_date),
        record_id=row.record_id,
        snapshot_id=row.snapshot_id,
        previous_snapshot_id=row.previous_snapshot_id,
        account_id=row.account_id,
        deployment_id=row.deployment_id,
        record_name=row.record_name,
        product_name=row.product_name,
    )


class PackageChangeService:
    """Loads stored package change events and runs the aggregations."""

    def __init__(self, db_session: Session, default_time_frame: str = "1y"):
        self.db = db_session
        self.default_time_frame = default_time_frame

    def load_events(self, time_frame: Optional[str] = None, as_of: Optional[datetime] = None) -> List[PackageChange]:
        as_of = as_of or utc_now()
        start = parse_time_frame(time_frame or self.default_time_frame, as_of)
        query = self.db.query(PackageChangeRecord)
        if start is not None:
            query = query.filter(PackageChangeRecord.change_date >= start)
        rows = query.order_by(PackageChangeRecord.change_date.asc(), PackageChangeRecord.id.asc()).all()
        return [record_to_change(r) for r in rows]

    def summary(self, time_frame: Optional[str] = None, as_of: Optional[datetime] = None) -> Dict[str, Any]:
        time_frame = time_frame or self.default_time_frame
        as_of = as_of or utc_now()
        return summary(self.load_events(time_frame, as_of), time_frame, as_of)

    def by_account(
        self,
        time_frame: Optional[str] = None,
        sort_by: str = "total",
        limit: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> PackageChangeHierarchy:
        time_frame = time_frame or self.default_time_frame
        as_of = as_of or utc_now()
        hierarchy = aggregate(self.load_events(time_frame, as_of), time_frame, as_of, sort_by)
        if limit is not None:
            hierarchy.accounts = hierarchy.accounts[:limit]
        return hierarchy

    def by_product(
        self,
        time_frame: Optional[str] = None,
        sort_by: str = "total",
        limit: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> List[ProductRollup]:
        time_frame = time_frame or self.default_time_frame
        as_of = as_of or utc_now()
        rollups = by_product(self.load_events(time_frame, as_of), time_frame, as_of, sort_by)
        return rollups[:limit] if limit is not None else rollups

    def recent(self, limit: int = 20) -> List[PackageChange]:
        rows = (
            self.db.query(PackageChangeRecord)
            .order_by(PackageChangeRecord.change_date.desc(), PackageChangeRecord.id.asc())
            .limit(limit)
            .all()
        )
        return [record_to_change(r) for r in rows]
