"""
Ghost account models.

The derived flag and the human review decision are stored separately:

- GhostAccount: recomputed on every ghost-account analysis run. The whole
  table is replaced, never merged.
- GhostAccountReview: written only by the explicit review action and never
  touched by analysis runs.

They are joined at read time so recomputation cannot clobber a review.
"""

from sqlalchemy import Column, DateTime, Integer, String, Text

from provisioning_ops.db_base import Base
from provisioning_ops.models.base import JSONType, TimestampMixin, generate_uuid


class GhostAccount(Base):
    """Derived ghost account flag from the latest analysis run."""

    __tablename__ = "ghost_accounts"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    account_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Account identifier"
    )

    latest_expiry = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="Most recent expiry among the account's expired entitlements"
    )

    total_expired_products = Column(Integer, nullable=False)

    deployment_count = Column(Integer, nullable=False, default=0)

    expired_products = Column(
        JSONType,
        nullable=False,
        default=list,
        comment="Expired entitlements for drill-down"
    )

    last_checked = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="Evaluation time of the run that produced this row"
    )

    def __repr__(self) -> str:
        return (
            f"<GhostAccount(account_id={self.account_id}, "
            f"expired={self.total_expired_products}, latest_expiry={self.latest_expiry})>"
        )


class GhostAccountReview(Base, TimestampMixin):
    """Persisted review decision for a ghost account."""

    __tablename__ = "ghost_account_reviews"

    account_id = Column(String(255), primary_key=True)

    review_status = Column(
        String(20),
        nullable=False,
        default="reviewed",
        comment="unreviewed or reviewed"
    )

    reviewed_by = Column(String(255), nullable=True)

    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    notes = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<GhostAccountReview(account_id={self.account_id}, status={self.review_status})>"
