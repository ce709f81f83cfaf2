"""
PS record snapshot model.

One row per distinct captured state of a provisioning (PS) record. Rows are
append-only: the snapshot store never updates or deletes them. A new row is
written only when its content fingerprint differs from the record's
immediately preceding snapshot.

Ordering invariant: for a given record_id, captured_at is strictly
increasing (enforced by the store, backed by a unique index).
"""

from sqlalchemy import Column, DateTime, Index, Integer, String, UniqueConstraint

from provisioning_ops.db_base import Base
from provisioning_ops.models.base import JSONType, ensure_utc, generate_uuid


class PSRecordSnapshot(Base):
    """Immutable capture of a PS record's status and full entitlement set."""

    __tablename__ = "ps_record_snapshots"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    record_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Upstream PS record id"
    )

    record_name = Column(
        String(100),
        nullable=True,
        index=True,
        comment="Human-readable record name (PS-12345)"
    )

    account_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Account the record provisions"
    )

    deployment_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Deployment the record belongs to"
    )

    request_type = Column(
        String(100),
        nullable=True,
        comment="Request action: New, Update, Deprovision, ..."
    )

    status = Column(
        String(100),
        nullable=True,
        comment="Lifecycle status at capture time"
    )

    record_created_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the record was created upstream; orders records within a deployment"
    )

    captured_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="When this snapshot was captured"
    )

    entitlements = Column(
        JSONType,
        nullable=False,
        default=list,
        comment="Ordered list of normalized entitlements"
    )

    entitlement_count = Column(
        Integer,
        nullable=False,
        default=0,
    )

    fingerprint = Column(
        String(64),
        nullable=False,
        comment="sha256 of canonical status + entitlement serialization"
    )

    __table_args__ = (
        UniqueConstraint("record_id", "captured_at", name="uq_ps_snapshot_record_captured"),
        Index("idx_ps_snapshot_deployment_created", "deployment_id", "record_created_at"),
        Index("idx_ps_snapshot_captured", "captured_at"),
    )

    def to_snapshot(self):
        """Convert to the immutable Snapshot value used by the analysis components."""
        from provisioning_ops.services.payload_normalizer import Entitlement
        from provisioning_ops.services.snapshot_store import Snapshot

        return Snapshot(
            id=self.id,
            record_id=self.record_id,
            captured_at=ensure_utc(self.captured_at),
            status=self.status,
            entitlements=tuple(Entitlement.from_dict(e) for e in (self.entitlements or [])),
            fingerprint=self.fingerprint,
            record_name=self.record_name,
            account_id=self.account_id,
            deployment_id=self.deployment_id,
            request_type=self.request_type,
            record_created_at=ensure_utc(self.record_created_at),
        )

    def __repr__(self) -> str:
        return (
            f"<PSRecordSnapshot("
            f"id={self.id}, "
            f"record_id={self.record_id}, "
            f"status={self.status}, "
            f"captured_at={self.captured_at}"
            f")>"
        )
