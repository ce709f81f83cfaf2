"""
PS audit trail: per-record timeline of snapshots and status transitions.

Composes the snapshot store with the stored status and package change
events. Records can be looked up by record id or by record name.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from provisioning_ops.errors import RecordNotFoundError
from provisioning_ops.models.base import ensure_utc
from provisioning_ops.models.change_events import PackageChangeRecord, StatusChangeRecord
from provisioning_ops.models.ps_snapshot import PSRecordSnapshot
from provisioning_ops.services.payload_normalizer import EntitlementCategory
from provisioning_ops.services.snapshot_store import Snapshot, SnapshotStore

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def snapshot_to_dict(snapshot: Snapshot) -> Dict[str, Any]:
    counts = {category.value: 0 for category in EntitlementCategory}
    for ent in snapshot.entitlements:
        counts[ent.category.value] += 1
    return {
        "snapshot_id": snapshot.id,
        "record_id": snapshot.record_id,
        "record_name": snapshot.record_name,
        "account_id": snapshot.account_id,
        "deployment_id": snapshot.deployment_id,
        "request_type": snapshot.request_type,
        "status": snapshot.status,
        "captured_at": _iso(snapshot.captured_at),
        "record_created_at": _iso(snapshot.record_created_at),
        "fingerprint": snapshot.fingerprint,
        "entitlement_counts": counts,
        "entitlements": [e.to_dict() for e in snapshot.entitlements],
    }


def status_change_to_dict(row: StatusChangeRecord) -> Dict[str, Any]:
    return {
        "record_id": row.record_id,
        "snapshot_id": row.snapshot_id,
        "previous_status": row.previous_status,
        "new_status": row.new_status,
        "change_type": row.change_type,
        "detected_at": _iso(row.detected_at),
    }


class AuditTrailService:
    """Read side of the PS audit trail."""

    def __init__(self, db_session: Session):
        self.db = db_session
        self.store = SnapshotStore(db_session)

    def _resolve(self, identifier: str) -> str:
        record_id = self.store.resolve_record_id(identifier)
        if record_id is None:
            raise RecordNotFoundError(identifier)
        return record_id

    def search(self, query: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Records whose id, name or account matches, with their latest state."""
        query = (query or "").strip()
        if not query:
            return []
        results = []
        for snapshot in self.store.find_records(query, limit=limit):
            snapshot_count = (
                self.db.query(func.count(PSRecordSnapshot.id))
                .filter(PSRecordSnapshot.record_id == snapshot.record_id)
                .scalar()
            )
            results.append({
                "record_id": snapshot.record_id,
                "record_name": snapshot.record_name,
                "account_id": snapshot.account_id,
                "deployment_id": snapshot.deployment_id,
                "request_type": snapshot.request_type,
                "status": snapshot.status,
                "last_captured_at": _iso(snapshot.captured_at),
                "snapshot_count": snapshot_count,
            })
        results.sort(key=lambda r: (r["record_name"] or "", r["record_id"]))
        return results

    def timeline(
        self,
        identifier: str,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Snapshot history of a record, oldest first, each entry carrying the
        status and package changes that snapshot revealed.

        Raises:
            RecordNotFoundError: if no snapshot exists for the identifier
        """
        record_id = self._resolve(identifier)
        history = self.store.history(record_id, from_time, to_time)

        status_by_snapshot = {
            row.snapshot_id: status_change_to_dict(row)
            for row in self.db.query(StatusChangeRecord).filter(
                StatusChangeRecord.record_id == record_id
            )
        }
        packages_by_snapshot: Dict[str, List[Dict[str, Any]]] = {}
        for row in self.db.query(PackageChangeRecord).filter(
            PackageChangeRecord.record_id == record_id
        ).order_by(PackageChangeRecord.product_code.asc()):
            packages_by_snapshot.setdefault(row.snapshot_id, []).append({
                "product_code": row.product_code,
                "product_name": row.product_name,
                "previous_tier": row.previous_tier,
                "new_tier": row.new_tier,
                "classification": row.classification,
            })

        entries = []
        for snapshot in history:
            entry = snapshot_to_dict(snapshot)
            entry["status_change"] = status_by_snapshot.get(snapshot.id)
            entry["package_changes"] = packages_by_snapshot.get(snapshot.id, [])
            entries.append(entry)

        latest = history[-1] if history else self.store.latest(record_id)
        return {
            "record_id": record_id,
            "record_name": latest.record_name if latest else None,
            "snapshot_count": len(entries),
            "snapshots": entries,
        }

    def status_changes(self, identifier: str) -> Dict[str, Any]:
        """Status transitions of a record, oldest first."""
        record_id = self._resolve(identifier)
        rows = (
            self.db.query(StatusChangeRecord)
            .filter(StatusChangeRecord.record_id == record_id)
            .order_by(StatusChangeRecord.detected_at.asc())
            .all()
        )
        return {
            "record_id": record_id,
            "status_changes": [status_change_to_dict(r) for r in rows],
        }

    def stats(self) -> Dict[str, Any]:
        total_records = self.db.query(func.count(func.distinct(PSRecordSnapshot.record_id))).scalar() or 0
        total_snapshots = self.db.query(func.count(PSRecordSnapshot.id)).scalar() or 0
        total_status_changes = (
            self.db.query(func.count(StatusChangeRecord.id))
            .filter(StatusChangeRecord.change_type == "status_change")
            .scalar()
            or 0
        )
        earliest, latest = self.db.query(
            func.min(PSRecordSnapshot.captured_at), func.max(PSRecordSnapshot.captured_at)
        ).one()
        return {
            "total_records": total_records,
            "total_snapshots": total_snapshots,
            "total_status_changes": total_status_changes,
            "earliest_snapshot": _iso(earliest),
            "latest_snapshot": _iso(latest),
        }
