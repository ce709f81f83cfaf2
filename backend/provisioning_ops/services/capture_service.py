"""
Capture pipeline: normalize -> lock -> capture -> diff -> persist events.

Each record is one unit of work with its own session and commit. The
snapshot and the events it reveals are written together or not at all,
and a failure on one record never rolls back another.

Package changes come from two comparisons:
- consecutive snapshots of the same record (diff engine)
- the first snapshot of an Update-type record against the latest snapshot
  of the record before it in the same deployment

A package change that repeats the last recorded transition of the same
deployment and product (same new tier, same classification) is not
stored again.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from provisioning_ops.config.analysis_policy import AnalysisPolicy
from provisioning_ops.errors import ParseError, StorageError
from provisioning_ops.integrations.sources.models import RawProvisioningRecord
from provisioning_ops.models.change_events import PackageChangeRecord, StatusChangeRecord
from provisioning_ops.services.analysis_scheduler import UnitResult
from provisioning_ops.services.diff_engine import PackageChange, SnapshotDiff, diff, diff_packages
from provisioning_ops.services.payload_normalizer import normalize_payload
from provisioning_ops.services.snapshot_store import (
    RecordLockRegistry,
    Snapshot,
    SnapshotStore,
    get_record_locks,
    ordering_key,
)

logger = logging.getLogger(__name__)


@dataclass
class CaptureOutcome:
    record_id: str
    created: bool
    snapshot: Snapshot
    diff: Optional[SnapshotDiff] = None
    package_changes: List[PackageChange] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def event_count(self) -> int:
        if not self.created:
            return 0
        status_events = 1 if self.diff is not None and self.diff.status_change else 0
        return status_events + len(self.package_changes)


class CaptureService:
    """
    Captures raw records into the snapshot store.

    Args:
        session_factory: returns a new Session per unit of work
        policy: tier order and cross-record request types
        locks: per-record lock registry (shared process-wide by default)
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        policy: AnalysisPolicy,
        locks: Optional[RecordLockRegistry] = None,
    ):
        self._session_factory = session_factory
        self.policy = policy
        self.tier_order = policy.tier_order
        self._locks = locks or get_record_locks()

    def capture_record(
        self,
        record: RawProvisioningRecord,
        captured_at: Optional[datetime] = None,
    ) -> CaptureOutcome:
        """
        Capture one record and persist the events its new snapshot reveals.

        Raises:
            ParseError: if the payload cannot be parsed at all
            StorageError: if the database is unavailable
        """
        normalized = normalize_payload(record.payload, source_record_id=record.record_id)

        session = self._session_factory()
        try:
            with self._locks.hold(record.record_id):
                store = SnapshotStore(session, locks=self._locks)
                previous = store.latest(record.record_id)
                snapshot, created = store.capture(
                    record.record_id,
                    record.status,
                    normalized.entitlements,
                    record_name=record.record_name,
                    account_id=record.account_id,
                    deployment_id=record.deployment_id,
                    request_type=record.request_type,
                    record_created_at=record.created_at,
                    captured_at=captured_at,
                )
                if not created:
                    return CaptureOutcome(
                        record_id=record.record_id,
                        created=False,
                        snapshot=snapshot,
                        warnings=normalized.warnings,
                    )

                result = diff(previous, snapshot, self.tier_order)
                changes = list(result.package_changes)
                if previous is None and record.request_type in self.policy.cross_record_request_types:
                    predecessor = store.deployment_predecessor(snapshot)
                    if predecessor is not None:
                        changes.extend(diff_packages(predecessor, snapshot, self.tier_order))

                changes = self._drop_repeated_transitions(session, changes)
                self._persist_events(session, result, changes)
                session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Capture failed: {e}", record_id=record.record_id) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(
            "capture_service.record_captured",
            extra={
                "record_id": record.record_id,
                "snapshot_id": snapshot.id,
                "status_event": result.status_change.change_type.value if result.status_change else None,
                "package_changes": len(changes),
                "warning_count": normalized.warning_count,
            },
        )
        return CaptureOutcome(
            record_id=record.record_id,
            created=True,
            snapshot=snapshot,
            diff=result,
            package_changes=changes,
            warnings=normalized.warnings,
        )

    def capture_deployment(
        self,
        records: Iterable[RawProvisioningRecord],
        captured_at: Optional[datetime] = None,
    ) -> UnitResult:
        """
        Capture every record of one deployment in creation order.

        Parse and storage failures skip the record and are counted; the
        remaining records are still captured.
        """
        unit = UnitResult()
        for record in sorted(records, key=_raw_sort_key):
            try:
                outcome = self.capture_record(record, captured_at=captured_at)
            except ParseError as e:
                logger.warning(
                    "capture_service.parse_failed",
                    extra={"record_id": record.record_id, "error": e.message},
                )
                unit.skipped += 1
                continue
            except StorageError as e:
                logger.warning(
                    "capture_service.storage_failed",
                    extra={"record_id": record.record_id, "error": e.message},
                )
                unit.skipped += 1
                if unit.first_error is None:
                    unit.first_error = e.message
                continue

            unit.records += 1
            unit.events += outcome.event_count
        return unit

    def _drop_repeated_transitions(
        self, session: Session, changes: List[PackageChange]
    ) -> List[PackageChange]:
        kept = []
        for change in changes:
            query = session.query(PackageChangeRecord).filter(
                PackageChangeRecord.product_code == change.product_code
            )
            if change.deployment_id:
                query = query.filter(PackageChangeRecord.deployment_id == change.deployment_id)
            else:
                query = query.filter(
                    PackageChangeRecord.deployment_id.is_(None),
                    PackageChangeRecord.record_id == change.record_id,
                )
            last = query.order_by(PackageChangeRecord.change_date.desc()).first()
            if (
                last is not None
                and last.new_tier == change.new_tier
                and last.classification == change.classification.value
            ):
                logger.debug(
                    "capture_service.repeated_transition",
                    extra={"record_id": change.record_id, "product_code": change.product_code},
                )
                continue
            kept.append(change)
        return kept

    @staticmethod
    def _persist_events(session: Session, result: SnapshotDiff, changes: List[PackageChange]) -> None:
        if result.status_change is not None:
            event = result.status_change
            session.add(
                StatusChangeRecord(
                    record_id=event.record_id,
                    snapshot_id=event.snapshot_id,
                    previous_status=event.previous_status,
                    new_status=event.new_status,
                    change_type=event.change_type.value,
                    detected_at=event.detected_at,
                )
            )
        for change in changes:
            session.add(
                PackageChangeRecord(
                    account_id=change.account_id,
                    deployment_id=change.deployment_id,
                    record_id=change.record_id,
                    record_name=change.record_name,
                    product_code=change.product_code,
                    product_name=change.product_name,
                    previous_tier=change.previous_tier,
                    new_tier=change.new_tier,
                    classification=change.classification.value,
                    change_date=change.change_date,
                    previous_snapshot_id=change.previous_snapshot_id,
                    snapshot_id=change.snapshot_id,
                )
            )
        session.flush()


def _raw_sort_key(record: RawProvisioningRecord):
    return ordering_key(record.created_at, record.record_name, record.record_id)


def group_by_deployment(records: Iterable[RawProvisioningRecord]) -> List[List[RawProvisioningRecord]]:
    """Work items for a scan: one list of records per deployment."""
    groups = {}
    for record in records:
        groups.setdefault(record.deployment_key, []).append(record)
    return [groups[key] for key in sorted(groups)]
