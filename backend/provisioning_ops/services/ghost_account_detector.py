"""
Ghost account detection.

An account is a ghost when the union of entitlements across its
deployments' latest snapshots is non-empty and every one of them has an
expiry in the past. One perpetual entitlement keeps an account alive, and
an account with no entitlements at all was never provisioned, so it is
not a ghost either. Deployments whose latest record is a deprovisioning
request are left out of the union.

Derived flags are recomputed on every run and replace the previous set.
Review decisions live in their own table and are merged in at read time,
so a refresh never clobbers a human review.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from provisioning_ops.errors import RecordNotFoundError
from provisioning_ops.models.base import ensure_utc, utc_now
from provisioning_ops.models.ghost_account import GhostAccount, GhostAccountReview
from provisioning_ops.services.payload_normalizer import Entitlement
from provisioning_ops.services.snapshot_store import Snapshot, SnapshotStore

logger = logging.getLogger(__name__)

REVIEW_UNREVIEWED = "unreviewed"
REVIEW_REVIEWED = "reviewed"


@dataclass(frozen=True)
class ReviewState:
    status: str = REVIEW_UNREVIEWED
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass
class GhostAccountFlag:
    account_id: str
    latest_expiry: datetime
    total_expired_products: int
    deployment_count: int
    expired_products: List[Entitlement] = field(default_factory=list)
    review: ReviewState = field(default_factory=ReviewState)
    last_checked: Optional[datetime] = None

    @property
    def is_reviewed(self) -> bool:
        return self.review.status == REVIEW_REVIEWED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "latest_expiry": self.latest_expiry.isoformat(),
            "total_expired_products": self.total_expired_products,
            "deployment_count": self.deployment_count,
            "review_status": self.review.status,
            "is_reviewed": self.is_reviewed,
            "reviewed_by": self.review.reviewed_by,
            "reviewed_at": self.review.reviewed_at.isoformat() if self.review.reviewed_at else None,
            "notes": self.review.notes,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
        }


def detect(
    latest_snapshots_by_account: Mapping[str, Sequence[Snapshot]],
    as_of: datetime,
    reviews: Optional[Mapping[str, ReviewState]] = None,
    excluded_request_types: Iterable[str] = (),
) -> List[GhostAccountFlag]:
    """
    Flag ghost accounts.

    Args:
        latest_snapshots_by_account: account -> latest snapshot of each of
            its deployments
        as_of: evaluation instant
        reviews: persisted review state by account id
        excluded_request_types: request types that mark a deployment as
            deprovisioned

    Returns:
        Flags ordered by account id
    """
    reviews = reviews or {}
    excluded = set(excluded_request_types)
    flags: List[GhostAccountFlag] = []

    for account_id in sorted(latest_snapshots_by_account):
        deployments = [
            s
            for s in latest_snapshots_by_account[account_id]
            if s.account_id and s.request_type not in excluded
        ]
        entitlements = [e for s in deployments for e in s.entitlements]
        if not entitlements:
            continue
        if any(e.expiry is None or e.expiry >= as_of for e in entitlements):
            continue

        flags.append(
            GhostAccountFlag(
                account_id=account_id,
                latest_expiry=max(e.expiry for e in entitlements),
                total_expired_products=len(entitlements),
                deployment_count=len(deployments),
                expired_products=sorted(
                    entitlements, key=lambda e: (e.expiry, e.product_code), reverse=True
                ),
                review=reviews.get(account_id, ReviewState()),
                last_checked=as_of,
            )
        )
    return flags


def _review_state(row: Optional[GhostAccountReview]) -> ReviewState:
    if row is None:
        return ReviewState()
    return ReviewState(
        status=row.review_status,
        reviewed_by=row.reviewed_by,
        reviewed_at=ensure_utc(row.reviewed_at),
        notes=row.notes,
    )


class GhostAccountService:
    """Persists detection results and serves the ghost account list."""

    def __init__(self, db_session: Session, excluded_request_types: Iterable[str] = ("Deprovision",)):
        self.db = db_session
        self.excluded_request_types = tuple(excluded_request_types)

    def refresh(self, as_of: Optional[datetime] = None) -> List[GhostAccountFlag]:
        """Recompute every flag and replace the stored set."""
        as_of = as_of or utc_now()
        store = SnapshotStore(self.db)
        flags = detect(
            store.latest_by_account(),
            as_of,
            reviews=self._reviews(),
            excluded_request_types=self.excluded_request_types,
        )

        self.db.query(GhostAccount).delete(synchronize_session=False)
        for flag in flags:
            self.db.add(
                GhostAccount(
                    account_id=flag.account_id,
                    latest_expiry=flag.latest_expiry,
                    total_expired_products=flag.total_expired_products,
                    deployment_count=flag.deployment_count,
                    expired_products=[e.to_dict() for e in flag.expired_products],
                    last_checked=as_of,
                )
            )
        self.db.commit()

        logger.info(
            "ghost_accounts.refreshed",
            extra={"ghost_accounts": len(flags), "as_of": as_of.isoformat()},
        )
        return flags

    def _reviews(self) -> Dict[str, ReviewState]:
        return {row.account_id: _review_state(row) for row in self.db.query(GhostAccountReview).all()}

    def _to_flag(self, row: GhostAccount, review: Optional[GhostAccountReview]) -> GhostAccountFlag:
        return GhostAccountFlag(
            account_id=row.account_id,
            latest_expiry=ensure_utc(row.latest_expiry),
            total_expired_products=row.total_expired_products,
            deployment_count=row.deployment_count,
            expired_products=[Entitlement.from_dict(e) for e in (row.expired_products or [])],
            review=_review_state(review),
            last_checked=ensure_utc(row.last_checked),
        )

    def list_accounts(
        self,
        account_search: Optional[str] = None,
        is_reviewed: Optional[bool] = None,
        product_codes: Optional[Sequence[str]] = None,
    ) -> List[GhostAccountFlag]:
        """
        Stored flags merged with review state, most recently lapsed first.

        product_codes keeps accounts that had at least one of the codes.
        """
        query = self.db.query(GhostAccount, GhostAccountReview).outerjoin(
            GhostAccountReview, GhostAccountReview.account_id == GhostAccount.account_id
        )
        if account_search:
            query = query.filter(GhostAccount.account_id.ilike(f"%{account_search}%"))

        flags = [self._to_flag(row, review) for row, review in query.all()]

        if is_reviewed is not None:
            flags = [f for f in flags if f.is_reviewed == is_reviewed]
        if product_codes:
            wanted = set(product_codes)
            flags = [
                f for f in flags if any(e.product_code in wanted for e in f.expired_products)
            ]

        flags.sort(key=lambda f: (-f.latest_expiry.timestamp(), f.account_id))
        return flags

    def get_account(self, account_id: str) -> GhostAccountFlag:
        result = (
            self.db.query(GhostAccount, GhostAccountReview)
            .outerjoin(GhostAccountReview, GhostAccountReview.account_id == GhostAccount.account_id)
            .filter(GhostAccount.account_id == account_id)
            .first()
        )
        if result is None:
            raise RecordNotFoundError(account_id, kind="ghost account")
        return self._to_flag(*result)

    def expired_products(self, account_id: str) -> List[Dict[str, Any]]:
        """Drill-down: the account's expired entitlements."""
        return [e.to_dict() for e in self.get_account(account_id).expired_products]

    def mark_reviewed(
        self,
        account_id: str,
        reviewed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> GhostAccountFlag:
        """
        Mark a ghost account as reviewed.

        Idempotent: reviewing an already reviewed account keeps the original
        reviewer and timestamp, and only fills in notes when new ones are
        given.

        Raises:
            RecordNotFoundError: if the account is not currently flagged
        """
        flagged = self.db.query(GhostAccount).filter(GhostAccount.account_id == account_id).first()
        if flagged is None:
            raise RecordNotFoundError(account_id, kind="ghost account")

        review = self.db.query(GhostAccountReview).filter(
            GhostAccountReview.account_id == account_id
        ).first()
        if review is None:
            review = GhostAccountReview(account_id=account_id)
            self.db.add(review)

        if review.review_status != REVIEW_REVIEWED or review.reviewed_at is None:
            review.review_status = REVIEW_REVIEWED
            review.reviewed_by = reviewed_by
            review.reviewed_at = utc_now()
            logger.info(
                "ghost_accounts.reviewed",
                extra={"account_id": account_id, "reviewed_by": reviewed_by},
            )
        if notes:
            review.notes = notes

        self.db.commit()
        return self._to_flag(flagged, review)

    def summary(self) -> Dict[str, int]:
        total = self.db.query(func.count(GhostAccount.id)).scalar() or 0
        reviewed = (
            self.db.query(func.count(GhostAccount.id))
            .join(GhostAccountReview, GhostAccountReview.account_id == GhostAccount.account_id)
            .filter(GhostAccountReview.review_status == REVIEW_REVIEWED)
            .scalar()
            or 0
        )
        return {
            "total_ghost_accounts": total,
            "unreviewed": total - reviewed,
            "reviewed": reviewed,
        }
