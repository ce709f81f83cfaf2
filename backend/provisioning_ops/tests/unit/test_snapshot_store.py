"""
Tests for the snapshot store.

Validates:
- Idempotent capture of unchanged state (fingerprint dedup)
- Reordered line items do not produce a new snapshot
- captured_at strictly increasing per record
- Latest-per-record, per-deployment and per-account reads
- Deployment predecessor lookup and record ordering
- Per-record lock registry
- StorageError on database failure
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from provisioning_ops.errors import StorageError
from provisioning_ops.models.ps_snapshot import PSRecordSnapshot
from provisioning_ops.services.snapshot_store import (
    RecordLockRegistry,
    SnapshotStore,
    compute_fingerprint,
    ordering_key,
)


T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def store(db_session):
    return SnapshotStore(db_session, locks=RecordLockRegistry())


class TestFingerprint:

    def test_order_insensitive(self, make_entitlement):
        a = make_entitlement("A", "Base")
        b = make_entitlement("B", "Premium")

        assert compute_fingerprint("Active", [a, b]) == compute_fingerprint("Active", [b, a])

    def test_status_is_part_of_fingerprint(self, make_entitlement):
        ents = [make_entitlement("A", "Base")]

        assert compute_fingerprint("Active", ents) != compute_fingerprint("Closed", ents)

    def test_tier_is_part_of_fingerprint(self, make_entitlement):
        assert compute_fingerprint("Active", [make_entitlement("A", "Base")]) != compute_fingerprint(
            "Active", [make_entitlement("A", "Premium")]
        )


class TestCapture:

    def test_first_capture_creates_snapshot(self, store, make_entitlement):
        snapshot, created = store.capture(
            "rec-1", "Active", [make_entitlement("A", "Base")],
            record_name="PS-1", account_id="ACC-1", deployment_id="DEP-1",
            captured_at=T0,
        )

        assert created is True
        assert snapshot.record_id == "rec-1"
        assert snapshot.captured_at == T0
        assert snapshot.entitlements[0].product_code == "A"
        assert store.latest("rec-1") == snapshot

    def test_unchanged_state_is_idempotent(self, store, db_session, make_entitlement):
        ents = [make_entitlement("A", "Base"), make_entitlement("B", "Premium")]
        first, _ = store.capture("rec-1", "Active", ents, captured_at=T0)

        again, created = store.capture(
            "rec-1", "Active", list(reversed(ents)), captured_at=T0 + timedelta(hours=1)
        )

        assert created is False
        assert again.id == first.id
        assert db_session.query(PSRecordSnapshot).count() == 1

    def test_changed_state_appends(self, store, make_entitlement):
        store.capture("rec-1", "Active", [make_entitlement("A", "Base")], captured_at=T0)

        snapshot, created = store.capture(
            "rec-1", "Active", [make_entitlement("A", "Premium")], captured_at=T0 + timedelta(days=1)
        )

        assert created is True
        assert [s.id for s in store.history("rec-1")][-1] == snapshot.id
        assert len(store.history("rec-1")) == 2

    def test_captured_at_strictly_increasing(self, store):
        first, _ = store.capture("rec-1", "Open", [], captured_at=T0)

        second, _ = store.capture("rec-1", "Closed", [], captured_at=T0)
        third, _ = store.capture("rec-1", "Open", [], captured_at=T0 - timedelta(days=1))

        assert first.captured_at < second.captured_at < third.captured_at

    def test_requires_record_id(self, store):
        with pytest.raises(ValueError):
            store.capture("", "Active", [])

    def test_database_failure_raises_storage_error(self):
        session = MagicMock()
        session.query.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        store = SnapshotStore(session, locks=RecordLockRegistry())

        with pytest.raises(StorageError) as exc_info:
            store.capture("rec-1", "Active", [])

        assert exc_info.value.retryable is True
        assert exc_info.value.record_id == "rec-1"
        session.rollback.assert_called_once()


class TestReads:

    def test_history_window(self, store):
        for day in range(3):
            store.capture("rec-1", f"S{day}", [], captured_at=T0 + timedelta(days=day))

        window = store.history("rec-1", from_time=T0 + timedelta(days=1), to_time=T0 + timedelta(days=2))

        assert [s.status for s in window] == ["S1", "S2"]

    def test_latest_per_record(self, store):
        store.capture("rec-1", "Open", [], captured_at=T0)
        store.capture("rec-1", "Closed", [], captured_at=T0 + timedelta(days=1))
        store.capture("rec-2", "Open", [], captured_at=T0)

        latest = {s.record_id: s.status for s in store.latest_per_record()}

        assert latest == {"rec-1": "Closed", "rec-2": "Open"}

    def test_latest_per_deployment_uses_newest_record(self, store):
        store.capture(
            "rec-1", "Done", [], record_name="PS-999", deployment_id="DEP-1",
            account_id="ACC-1", record_created_at=T0, captured_at=T0,
        )
        store.capture(
            "rec-2", "Done", [], record_name="PS-1000", deployment_id="DEP-1",
            account_id="ACC-1", record_created_at=T0, captured_at=T0,
        )
        store.capture("rec-3", "Done", [], account_id="ACC-2", captured_at=T0)

        deployments = store.latest_per_deployment()

        # Same creation time: PS-1000 sorts after PS-999 numerically
        assert deployments["DEP-1"].record_id == "rec-2"
        assert deployments["record:rec-3"].record_id == "rec-3"
        assert set(store.latest_by_account()) == {"ACC-1", "ACC-2"}

    def test_latest_by_account_skips_accountless_deployments(self, store):
        store.capture("rec-1", "Done", [], account_id="ACC-1", deployment_id="DEP-1", captured_at=T0)
        store.capture("rec-2", "Done", [], deployment_id="DEP-2", captured_at=T0)
        store.capture("rec-3", "Done", [], deployment_id="DEP-3", captured_at=T0)

        by_account = store.latest_by_account()

        assert list(by_account) == ["ACC-1"]
        assert store.latest("rec-2").account_key == "deployment:DEP-2"

    def test_deployment_predecessor(self, store):
        store.capture(
            "rec-1", "Done", [], deployment_id="DEP-1",
            record_created_at=T0, captured_at=T0,
        )
        store.capture(
            "rec-1", "Closed", [], deployment_id="DEP-1",
            record_created_at=T0, captured_at=T0 + timedelta(days=2),
        )
        update, _ = store.capture(
            "rec-2", "Done", [], deployment_id="DEP-1",
            record_created_at=T0 + timedelta(days=1), captured_at=T0 + timedelta(days=1),
        )

        predecessor = store.deployment_predecessor(update)

        assert predecessor.record_id == "rec-1"
        assert predecessor.status == "Closed"

    def test_no_predecessor_without_deployment(self, store):
        snapshot, _ = store.capture("rec-1", "Done", [], captured_at=T0)

        assert store.deployment_predecessor(snapshot) is None

    def test_find_and_resolve(self, store):
        store.capture("a0X1", "Done", [], record_name="PS-4242", account_id="ACME", captured_at=T0)

        assert [s.record_id for s in store.find_records("4242")] == ["a0X1"]
        assert [s.record_id for s in store.find_records("acme")] == ["a0X1"]
        assert store.find_records("nothing") == []
        assert store.resolve_record_id("PS-4242") == "a0X1"
        assert store.resolve_record_id("a0X1") == "a0X1"
        assert store.resolve_record_id("PS-0") is None


class TestOrderingKey:

    def test_creation_time_first(self):
        assert ordering_key(T0, "PS-9", "b") < ordering_key(T0 + timedelta(seconds=1), "PS-1", "a")

    def test_numeric_name_order(self):
        assert ordering_key(T0, "PS-999", "z") < ordering_key(T0, "PS-1000", "a")

    def test_missing_creation_time_sorts_first(self):
        assert ordering_key(None, "PS-5", "a") < ordering_key(T0, "PS-1", "a")

    def test_naive_and_aware_compare(self):
        naive = datetime(2025, 1, 1)

        assert ordering_key(naive, "PS-1", "a") == ordering_key(T0, "PS-1", "a")


class TestRecordLockRegistry:

    def test_same_record_same_lock(self):
        registry = RecordLockRegistry()

        assert registry.lock_for("rec-1") is registry.lock_for("rec-1")
        assert registry.lock_for("rec-1") is not registry.lock_for("rec-2")
        assert len(registry) == 2

    def test_hold_is_reentrant(self):
        registry = RecordLockRegistry()

        with registry.hold("rec-1"):
            with registry.hold("rec-1"):
                pass

    def test_hold_excludes_other_threads(self):
        registry = RecordLockRegistry()
        acquired = threading.Event()
        released = threading.Event()
        other_got_lock = []

        def other():
            acquired.wait()
            got = registry.lock_for("rec-1").acquire(blocking=False)
            other_got_lock.append(got)
            if got:
                registry.lock_for("rec-1").release()
            released.set()

        thread = threading.Thread(target=other)
        thread.start()
        with registry.hold("rec-1"):
            acquired.set()
            released.wait(timeout=5)
        thread.join(timeout=5)

        assert other_got_lock == [False]
