"""
Derived change event models.

Both tables are written by the capture pipeline in the same unit of work as
the snapshot that produced them, and are never edited afterwards.

- StatusChangeRecord: a record's first snapshot ("initial") or a status
  transition between consecutive snapshots ("status_change").
- PackageChangeRecord: a product's package tier changed between two
  snapshots of the same deployment (upgrade, downgrade or unknown when a
  tier has no configured rank).
"""

from sqlalchemy import Column, DateTime, ForeignKey, Index, String

from provisioning_ops.db_base import Base
from provisioning_ops.models.base import generate_uuid


class StatusChangeRecord(Base):
    """Persisted StatusChangeEvent."""

    __tablename__ = "status_change_events"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    record_id = Column(String(255), nullable=False, index=True)

    snapshot_id = Column(
        String(255),
        ForeignKey("ps_record_snapshots.id"),
        nullable=False,
        comment="Snapshot n that revealed the change"
    )

    previous_status = Column(String(100), nullable=True)

    new_status = Column(String(100), nullable=True)

    change_type = Column(
        String(50),
        nullable=False,
        comment="initial or status_change"
    )

    detected_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="captured_at of snapshot n"
    )

    __table_args__ = (
        Index("idx_status_change_record_detected", "record_id", "detected_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<StatusChangeRecord(record_id={self.record_id}, "
            f"{self.previous_status!r} -> {self.new_status!r}, type={self.change_type})>"
        )


class PackageChangeRecord(Base):
    """Persisted PackageChangeEvent."""

    __tablename__ = "package_change_events"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    account_id = Column(String(255), nullable=True, index=True)

    deployment_id = Column(String(255), nullable=True, index=True)

    record_id = Column(String(255), nullable=False, index=True)

    record_name = Column(String(100), nullable=True)

    product_code = Column(String(100), nullable=False, index=True)

    product_name = Column(String(255), nullable=True)

    previous_tier = Column(String(100), nullable=False)

    new_tier = Column(String(100), nullable=False)

    classification = Column(
        String(20),
        nullable=False,
        index=True,
        comment="upgrade, downgrade or unknown"
    )

    change_date = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="captured_at of the newer snapshot"
    )

    previous_snapshot_id = Column(String(255), nullable=True)

    snapshot_id = Column(String(255), ForeignKey("ps_record_snapshots.id"), nullable=False)

    __table_args__ = (
        Index("idx_package_change_deployment_product", "deployment_id", "product_code", "change_date"),
        Index("idx_package_change_date", "change_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<PackageChangeRecord(deployment_id={self.deployment_id}, product={self.product_code}, "
            f"{self.previous_tier} -> {self.new_tier}, {self.classification})>"
        )
