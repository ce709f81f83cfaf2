"""
Snapshot store - append-only persistence of PS record states.

capture() computes a canonical fingerprint over the record's status and
normalized entitlement set. If it matches the record's most recent
snapshot nothing is written and created=False is returned, so repeated
captures of an unchanged record are idempotent. Otherwise a new snapshot
is appended.

CONSTRAINTS:
- Snapshots are never edited or deleted here
- captured_at is strictly increasing per record
- The dedup check and the append run under a per-record lock, so two
  concurrent captures of the same record cannot both see "no prior
  snapshot". The lock is process-local: capture must not be sharded across
  processes without a shared lock.
- Database failures surface as StorageError (transient, retryable)
"""

import hashlib
import json
import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from provisioning_ops.errors import StorageError
from provisioning_ops.models.base import utc_now, ensure_utc
from provisioning_ops.models.ps_snapshot import PSRecordSnapshot
from provisioning_ops.services.payload_normalizer import Entitlement

logger = logging.getLogger(__name__)

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)
_RECORD_NUMBER = re.compile(r"(\d+)")


@dataclass(frozen=True)
class Snapshot:
    """Immutable capture of a PS record at a point in time."""

    id: str
    record_id: str
    captured_at: datetime
    status: Optional[str]
    entitlements: Tuple[Entitlement, ...]
    fingerprint: str
    record_name: Optional[str] = None
    account_id: Optional[str] = None
    deployment_id: Optional[str] = None
    request_type: Optional[str] = None
    record_created_at: Optional[datetime] = None

    @property
    def deployment_key(self) -> str:
        """Deployment id, or the record id for records without a deployment."""
        return self.deployment_id or f"record:{self.record_id}"

    @property
    def account_key(self) -> str:
        """Account id; records without one stand alone per deployment."""
        return self.account_id or f"deployment:{self.deployment_key}"


def ordering_key(
    created_at: Optional[datetime],
    record_name: Optional[str],
    record_id: str,
) -> Tuple[datetime, int, str]:
    """
    Order records within a deployment.

    Upstream creation time first, then the numeric part of the record name
    (PS-999 sorts before PS-1000), then record id.
    """
    number = 0
    if record_name:
        match = _RECORD_NUMBER.search(record_name)
        if match:
            number = int(match.group(1))
    return (ensure_utc(created_at) or _EARLIEST, number, record_id)


def record_sort_key(snapshot: Snapshot) -> Tuple[datetime, int, str]:
    return ordering_key(snapshot.record_created_at, snapshot.record_name, snapshot.record_id)


def compute_fingerprint(status: Optional[str], entitlements: Iterable[Entitlement]) -> str:
    """
    sha256 over a canonical serialization of status and entitlements.

    Entitlements are sorted before hashing so a payload that only reorders
    line items does not produce a new snapshot.
    """
    items = sorted(
        (e.to_dict() for e in entitlements),
        key=lambda d: json.dumps(d, sort_keys=True),
    )
    canonical = json.dumps(
        {"status": status, "entitlements": items},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class RecordLockRegistry:
    """
    Record-scoped mutual exclusion.

    Captures for the same record id serialize; different records proceed
    in parallel. Locks are reentrant so the capture pipeline can hold a
    record's lock across capture + diff + event writes while the store
    takes it again inside capture().
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, record_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(record_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[record_id] = lock
            return lock

    @contextmanager
    def hold(self, record_id: str) -> Iterator[None]:
        lock = self.lock_for(record_id)
        with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


_record_locks = RecordLockRegistry()


def get_record_locks() -> RecordLockRegistry:
    """Process-wide lock registry shared by every capture path."""
    return _record_locks


class SnapshotStore:
    """
    Snapshot persistence for one database session.

    The store flushes but does not commit; the caller owns the unit of
    work (see CaptureService).
    """

    def __init__(self, db_session: Session, locks: Optional[RecordLockRegistry] = None):
        self.db = db_session
        self._locks = locks or get_record_locks()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def capture(
        self,
        record_id: str,
        status: Optional[str],
        entitlements: Sequence[Entitlement],
        *,
        record_name: Optional[str] = None,
        account_id: Optional[str] = None,
        deployment_id: Optional[str] = None,
        request_type: Optional[str] = None,
        record_created_at: Optional[datetime] = None,
        captured_at: Optional[datetime] = None,
    ) -> Tuple[Snapshot, bool]:
        """
        Capture a record's current state.

        Returns:
            (snapshot, created). created is False when the state matches
            the latest snapshot; the returned snapshot is then that latest one.

        Raises:
            StorageError: if the database is unavailable
        """
        if not record_id:
            raise ValueError("record_id is required")

        fingerprint = compute_fingerprint(status, entitlements)

        with self._locks.hold(record_id):
            try:
                latest = self._latest_row(record_id)
                if latest is not None and latest.fingerprint == fingerprint:
                    return latest.to_snapshot(), False

                when = ensure_utc(captured_at) or utc_now()
                if latest is not None:
                    previous = ensure_utc(latest.captured_at)
                    if when <= previous:
                        when = previous + timedelta(microseconds=1)

                row = PSRecordSnapshot(
                    record_id=record_id,
                    record_name=record_name,
                    account_id=account_id,
                    deployment_id=deployment_id,
                    request_type=request_type,
                    status=status,
                    record_created_at=ensure_utc(record_created_at),
                    captured_at=when,
                    entitlements=[e.to_dict() for e in entitlements],
                    entitlement_count=len(entitlements),
                    fingerprint=fingerprint,
                )
                self.db.add(row)
                self.db.flush()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(
                    "snapshot_store.capture_failed",
                    extra={"record_id": record_id, "error": str(e)},
                )
                raise StorageError(f"Snapshot capture failed: {e}", record_id=record_id) from e

        logger.info(
            "snapshot_store.captured",
            extra={
                "record_id": record_id,
                "snapshot_id": row.id,
                "status": status,
                "entitlement_count": len(entitlements),
                "is_first": latest is None,
            },
        )
        return row.to_snapshot(), True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _latest_row(self, record_id: str) -> Optional[PSRecordSnapshot]:
        return (
            self.db.query(PSRecordSnapshot)
            .filter(PSRecordSnapshot.record_id == record_id)
            .order_by(PSRecordSnapshot.captured_at.desc())
            .first()
        )

    def latest(self, record_id: str) -> Optional[Snapshot]:
        """Most recent snapshot of a record, or None."""
        try:
            row = self._latest_row(record_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Snapshot read failed: {e}", record_id=record_id) from e
        return row.to_snapshot() if row else None

    def history(
        self,
        record_id: str,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None,
    ) -> List[Snapshot]:
        """All snapshots of a record in [from_time, to_time], oldest first."""
        query = self.db.query(PSRecordSnapshot).filter(PSRecordSnapshot.record_id == record_id)
        if from_time is not None:
            query = query.filter(PSRecordSnapshot.captured_at >= ensure_utc(from_time))
        if to_time is not None:
            query = query.filter(PSRecordSnapshot.captured_at <= ensure_utc(to_time))
        try:
            rows = query.order_by(PSRecordSnapshot.captured_at.asc()).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Snapshot read failed: {e}", record_id=record_id) from e
        return [row.to_snapshot() for row in rows]

    def latest_per_record(
        self,
        deployment_id: Optional[str] = None,
        record_ids: Optional[Sequence[str]] = None,
    ) -> List[Snapshot]:
        """Latest snapshot of every record, optionally restricted."""
        sub_query = self.db.query(
            PSRecordSnapshot.record_id.label("record_id"),
            func.max(PSRecordSnapshot.captured_at).label("max_captured"),
        )
        if deployment_id is not None:
            sub_query = sub_query.filter(PSRecordSnapshot.deployment_id == deployment_id)
        if record_ids is not None:
            sub_query = sub_query.filter(PSRecordSnapshot.record_id.in_(list(record_ids)))
        latest = sub_query.group_by(PSRecordSnapshot.record_id).subquery()

        try:
            rows = (
                self.db.query(PSRecordSnapshot)
                .join(
                    latest,
                    and_(
                        PSRecordSnapshot.record_id == latest.c.record_id,
                        PSRecordSnapshot.captured_at == latest.c.max_captured,
                    ),
                )
                .order_by(PSRecordSnapshot.record_id.asc())
                .all()
            )
        except SQLAlchemyError as e:
            raise StorageError(f"Snapshot read failed: {e}") from e
        return [row.to_snapshot() for row in rows]

    def latest_per_deployment(self) -> Dict[str, Snapshot]:
        """
        Current state of every deployment: the latest snapshot of the
        deployment's most recent record.
        """
        by_deployment: Dict[str, Snapshot] = {}
        for snapshot in self.latest_per_record():
            current = by_deployment.get(snapshot.deployment_key)
            if current is None or record_sort_key(snapshot) > record_sort_key(current):
                by_deployment[snapshot.deployment_key] = snapshot
        return by_deployment

    def latest_by_account(self) -> Dict[str, List[Snapshot]]:
        """
        Deployment-level latest snapshots grouped by account.

        Deployments without an account id are left out: there is no account
        to flag or review.
        """
        by_account: Dict[str, List[Snapshot]] = {}
        deployments = self.latest_per_deployment()
        for key in sorted(deployments):
            snapshot = deployments[key]
            if not snapshot.account_id:
                continue
            by_account.setdefault(snapshot.account_id, []).append(snapshot)
        return by_account

    def deployment_predecessor(self, snapshot: Snapshot) -> Optional[Snapshot]:
        """
        Latest snapshot of the record that precedes this one in its deployment.

        Returns None for records without a deployment or for the first
        record of a deployment.
        """
        if not snapshot.deployment_id:
            return None
        own_key = record_sort_key(snapshot)
        candidates = [
            s
            for s in self.latest_per_record(deployment_id=snapshot.deployment_id)
            if s.record_id != snapshot.record_id and record_sort_key(s) < own_key
        ]
        if not candidates:
            return None
        return max(candidates, key=record_sort_key)

    def find_records(self, query: str, limit: int = 50) -> List[Snapshot]:
        """Latest snapshots of records whose id or name contains query."""
        pattern = f"%{query}%"
        matching = (
            self.db.query(PSRecordSnapshot.record_id)
            .filter(
                or_(
                    PSRecordSnapshot.record_id.ilike(pattern),
                    PSRecordSnapshot.record_name.ilike(pattern),
                    PSRecordSnapshot.account_id.ilike(pattern),
                )
            )
            .distinct()
            .limit(limit)
            .all()
        )
        record_ids = [r[0] for r in matching]
        if not record_ids:
            return []
        return self.latest_per_record(record_ids=record_ids)

    def resolve_record_id(self, identifier: str) -> Optional[str]:
        """Map a record id or record name (PS-12345) to a record id."""
        row = (
            self.db.query(PSRecordSnapshot.record_id)
            .filter(
                or_(
                    PSRecordSnapshot.record_id == identifier,
                    PSRecordSnapshot.record_name == identifier,
                )
            )
            .first()
        )
        return row[0] if row else None
