"""
Integration tests for the analysis engine: sources -> scheduler -> capture
-> projections, against SQLite.

Validates:
- Expiration refresh scans, captures and counts expiring records
- Package change refresh records changes between scans
- Ghost account refresh recomputes flags
- Conflicting starts and failed fetches
- Run log rows and the expiration monitor read model
"""

from datetime import timedelta

import pytest

from provisioning_ops.errors import ConflictError
from provisioning_ops.integrations.sources.client import SourceConnector, StaticConnector
from provisioning_ops.integrations.sources.exceptions import SourceConnectionError
from provisioning_ops.models.analysis_run import AnalysisRun
from provisioning_ops.models.base import utc_now
from provisioning_ops.services.analysis_engine import AnalysisEngine
from provisioning_ops.services.analysis_scheduler import JobState, JobType
from provisioning_ops.services.expiration_monitor_service import ExpirationMonitorService
from provisioning_ops.services.ghost_account_detector import GhostAccountService
from provisioning_ops.services.package_change_aggregator import PackageChangeService
from provisioning_ops.services.snapshot_store import RecordLockRegistry


class MutableConnector(SourceConnector):
    """Static source whose records can be swapped between scans."""

    name = "mutable"

    def __init__(self, records):
        self.records = list(records)

    def fetch_records(self, since_years):
        return iter(self.records)


class FailingConnector(SourceConnector):
    name = "failing"

    def fetch_records(self, since_years):
        raise SourceConnectionError("Connection error: refused", source=self.name)


@pytest.fixture
def now():
    return utc_now()


@pytest.fixture
def fleet(make_record, now):
    """Three accounts: one expiring soon, one healthy, one lapsed."""
    def _days(n):
        return (now + timedelta(days=n)).isoformat()

    created = now - timedelta(days=60)
    return [
        make_record(record_id="r1", record_name="PS-1", account_id="ACC-1", deployment_id="DEP-1",
                    created_at=created, models=[("IC-DESIGNER", "Base", _days(5))]),
        make_record(record_id="r2", record_name="PS-2", account_id="ACC-2", deployment_id="DEP-2",
                    created_at=created, models=[("IC-RISK", "Premium", _days(200))]),
        make_record(record_id="r3", record_name="PS-3", account_id="ACC-3", deployment_id="DEP-3",
                    created_at=created, data=[("DATA-US", None, _days(-20))]),
    ]


def _engine(session_factory, policy, connectors):
    return AnalysisEngine(session_factory, policy, connectors, locks=RecordLockRegistry())


class TestExpirationRefresh:

    @pytest.mark.asyncio
    async def test_end_to_end(self, session_factory, db_session, policy, fleet):
        engine = _engine(session_factory, policy, [StaticConnector(fleet)])

        summary = await engine.refresh_expirations(years_back=5, window_days=30)

        assert summary.status == JobState.COMPLETED
        assert summary.records_scanned == 3
        # r1 expires in 5 days, r3 already lapsed
        assert summary.events_found == 2

        run = db_session.query(AnalysisRun).one()
        assert run.job_type == "expiration-refresh"
        assert run.status == "completed"
        assert run.records_scanned == 3

        monitor = ExpirationMonitorService(db_session, policy).get_monitor(window_days=30)
        assert monitor["last_analyzed"] is not None
        assert monitor["summary"]["at_risk"] == 2
        assert [e["ps_record"]["id"] for e in monitor["expirations"]] == ["r3", "r1"]
        assert monitor["expirations"][1]["products"]["models"][0]["product_code"] == "IC-DESIGNER"

    @pytest.mark.asyncio
    async def test_rescan_is_idempotent(self, session_factory, db_session, policy, fleet):
        engine = _engine(session_factory, policy, [StaticConnector(fleet)])

        await engine.capture_all(since_years=5)
        again = await engine.capture_all(since_years=5)

        assert again.records_scanned == 3
        assert again.events_found == 0


class TestPackageChangeRefresh:

    @pytest.mark.asyncio
    async def test_changes_between_scans(self, session_factory, db_session, policy, make_record, now):
        created = now - timedelta(days=10)
        source = MutableConnector([
            make_record(record_id="r1", created_at=created, models=[("IC-DESIGNER", "Base", None)]),
        ])
        engine = _engine(session_factory, policy, [source])

        first = await engine.refresh_package_changes(years_back=1)
        source.records = [
            make_record(record_id="r1", created_at=created, models=[("IC-DESIGNER", "Enterprise", None)]),
        ]
        second = await engine.refresh_package_changes(years_back=1)

        assert first.events_found == 1  # initial status event
        assert second.events_found == 1  # the upgrade
        summary = PackageChangeService(db_session).summary("30d")
        assert summary["upgrades"] == 1
        assert summary["accounts_affected"] == 1


class TestGhostAccountRefresh:

    @pytest.mark.asyncio
    async def test_flags_lapsed_account(self, session_factory, db_session, policy, fleet):
        engine = _engine(session_factory, policy, [StaticConnector(fleet)])

        summary = await engine.refresh_ghost_accounts(years_back=5)

        assert summary.status == JobState.COMPLETED
        assert summary.events_found == 1
        flags = GhostAccountService(db_session).list_accounts()
        assert [f.account_id for f in flags] == ["ACC-3"]


class TestFailures:

    @pytest.mark.asyncio
    async def test_conflicting_start(self, session_factory, policy, fleet):
        engine = _engine(session_factory, policy, [StaticConnector(fleet)])

        task = engine.start_capture(since_years=5)
        with pytest.raises(ConflictError):
            engine.start_capture(since_years=5)
        await task

        assert engine.scheduler.last_run(JobType.AUDIT_CAPTURE).status == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_source_failure_fails_run(self, session_factory, db_session, policy):
        engine = _engine(session_factory, policy, [FailingConnector()])

        summary = await engine.refresh_ghost_accounts()

        assert summary.status == JobState.FAILED
        assert "refused" in summary.first_error
        assert db_session.query(AnalysisRun).one().status == "failed"

    @pytest.mark.asyncio
    async def test_unparseable_records_are_skipped(self, session_factory, policy, make_record, now):
        records = [
            make_record(record_id="ok", created_at=now - timedelta(days=1)),
            make_record(record_id="bad", deployment_id="DEP-9", created_at=now - timedelta(days=1),
                        payload="not json"),
        ]
        engine = _engine(session_factory, policy, [StaticConnector(records)])

        summary = await engine.capture_all(since_years=1)

        assert summary.status == JobState.COMPLETED
        assert summary.records_scanned == 2
        assert summary.records_skipped == 1


def test_static_connector_filters_by_age(make_record, now):
    connector = StaticConnector([
        make_record(record_id="recent", created_at=now - timedelta(days=10)),
        make_record(record_id="ancient", created_at=now - timedelta(days=800)),
    ])

    assert [r.record_id for r in connector.fetch_records(1)] == ["recent"]
    assert [r.record_id for r in connector.fetch_records(3)] == ["recent", "ancient"]
