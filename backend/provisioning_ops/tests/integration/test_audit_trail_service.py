"""
Integration tests for the PS audit trail read side.

Validates:
- Timeline ordering with status and package changes attached
- Lookup by record id or record name
- Status change history and totals
- Search by id, name and account
"""

from datetime import timedelta

import pytest

from provisioning_ops.errors import RecordNotFoundError
from provisioning_ops.services.audit_trail_service import AuditTrailService
from provisioning_ops.services.capture_service import CaptureService
from provisioning_ops.services.snapshot_store import RecordLockRegistry


@pytest.fixture
def history(session_factory, policy, make_record, as_of):
    capture = CaptureService(session_factory, policy, locks=RecordLockRegistry())
    capture.capture_record(
        make_record(record_id="a0X1", record_name="PS-4242", account_id="ACME",
                    status="Pending", models=[("IC-DESIGNER", "Base", None)]),
        captured_at=as_of,
    )
    capture.capture_record(
        make_record(record_id="a0X1", record_name="PS-4242", account_id="ACME",
                    status="Completed", models=[("IC-DESIGNER", "Premium", None)]),
        captured_at=as_of + timedelta(days=1),
    )
    capture.capture_record(
        make_record(record_id="a0X2", record_name="PS-5000", account_id="GLOBEX", deployment_id="DEP-2"),
        captured_at=as_of,
    )


class TestAuditTrailService:

    def test_timeline(self, db_session, history):
        timeline = AuditTrailService(db_session).timeline("PS-4242")

        assert timeline["record_id"] == "a0X1"
        assert timeline["record_name"] == "PS-4242"
        assert timeline["snapshot_count"] == 2
        first, second = timeline["snapshots"]
        assert first["status_change"]["change_type"] == "initial"
        assert first["package_changes"] == []
        assert second["status_change"]["previous_status"] == "Pending"
        assert second["package_changes"][0]["classification"] == "upgrade"
        assert second["entitlement_counts"] == {"model": 1, "data": 0, "app": 0}

    def test_timeline_window(self, db_session, history, as_of):
        timeline = AuditTrailService(db_session).timeline(
            "a0X1", from_time=as_of + timedelta(hours=12)
        )

        assert [s["status"] for s in timeline["snapshots"]] == ["Completed"]

    def test_unknown_record(self, db_session, history):
        with pytest.raises(RecordNotFoundError):
            AuditTrailService(db_session).timeline("PS-0")

    def test_status_changes(self, db_session, history):
        result = AuditTrailService(db_session).status_changes("a0X1")

        assert [c["new_status"] for c in result["status_changes"]] == ["Pending", "Completed"]

    def test_search(self, db_session, history):
        service = AuditTrailService(db_session)

        by_name = service.search("4242")
        by_account = service.search("globex")

        assert [r["record_id"] for r in by_name] == ["a0X1"]
        assert by_name[0]["snapshot_count"] == 2
        assert by_name[0]["status"] == "Completed"
        assert [r["record_name"] for r in by_account] == ["PS-5000"]
        assert service.search("  ") == []

    def test_stats(self, db_session, history, as_of):
        stats = AuditTrailService(db_session).stats()

        assert stats["total_records"] == 2
        assert stats["total_snapshots"] == 3
        assert stats["total_status_changes"] == 1
        assert stats["earliest_snapshot"] == as_of.isoformat()
