"""
Tests for the package change aggregator.

Validates:
- Time frame parsing and filtering
- Account -> deployment -> product hierarchy with counts at every level
- Total ordering (count descending, name ascending)
- Product rollup with distinct accounts and deployments
- Summary totals
"""

import uuid
from datetime import timedelta

import pytest

from provisioning_ops.services.diff_engine import PackageChange, PackageChangeClassification
from provisioning_ops.services.package_change_aggregator import (
    aggregate,
    by_product,
    parse_time_frame,
    summary,
)

UP = PackageChangeClassification.UPGRADE
DOWN = PackageChangeClassification.DOWNGRADE
UNKNOWN = PackageChangeClassification.UNKNOWN


@pytest.fixture
def make_change(as_of):
    def _make(account="ACC-1", deployment="DEP-1", product="IC-DESIGNER", classification=UP, days_ago=10, record="r1"):
        return PackageChange(
            product_code=product,
            previous_tier="Base",
            new_tier="Premium",
            classification=classification,
            change_date=as_of - timedelta(days=days_ago),
            record_id=record,
            snapshot_id=str(uuid.uuid4()),
            account_id=account,
            deployment_id=deployment,
        )
    return _make


class TestParseTimeFrame:

    @pytest.mark.parametrize(
        "label,days",
        [("30d", 30), ("2w", 14), ("6m", 180), ("1y", 365), ("2Y", 730)],
    )
    def test_labels(self, as_of, label, days):
        assert parse_time_frame(label, as_of) == as_of - timedelta(days=days)

    def test_all(self, as_of):
        assert parse_time_frame("all", as_of) is None

    @pytest.mark.parametrize("label", ["", "thirty days", "30", "d30", "1h"])
    def test_invalid(self, as_of, label):
        with pytest.raises(ValueError):
            parse_time_frame(label, as_of)


class TestAggregate:

    def test_hierarchy_counts(self, as_of, make_change):
        events = [
            make_change(account="ACC-1", deployment="DEP-1", product="A", classification=UP),
            make_change(account="ACC-1", deployment="DEP-1", product="A", classification=DOWN),
            make_change(account="ACC-1", deployment="DEP-2", product="B", classification=UNKNOWN),
            make_change(account="ACC-2", deployment="DEP-3", product="A", classification=UP),
        ]

        hierarchy = aggregate(events, "1y", as_of)

        acc1 = hierarchy.accounts[0]
        assert acc1.account_id == "ACC-1"
        assert (acc1.counts.total, acc1.counts.upgrades, acc1.counts.downgrades, acc1.counts.unknown) == (3, 1, 1, 1)
        assert acc1.deployment_count == 2
        assert acc1.product_count == 2
        assert list(acc1.deployments) == ["DEP-1", "DEP-2"]
        assert acc1.deployments["DEP-1"].products["A"].counts.total == 2

    def test_time_frame_filter(self, as_of, make_change):
        events = [make_change(days_ago=5), make_change(days_ago=40), make_change(days_ago=-1)]

        assert aggregate(events, "30d", as_of).accounts[0].counts.total == 1
        assert aggregate(events, "all", as_of).accounts[0].counts.total == 2

    def test_ties_break_by_name(self, as_of, make_change):
        events = [make_change(account="ZED"), make_change(account="ALPHA"), make_change(account="MID")]

        assert [a.account_id for a in aggregate(events, "1y", as_of).accounts] == ["ALPHA", "MID", "ZED"]

    def test_sort_by_downgrades(self, as_of, make_change):
        events = [
            make_change(account="ACC-1", classification=UP),
            make_change(account="ACC-1", classification=UP),
            make_change(account="ACC-2", classification=DOWN),
        ]

        by_total = aggregate(events, "1y", as_of, sort_by="total")
        by_down = aggregate(events, "1y", as_of, sort_by="downgrades")

        assert [a.account_id for a in by_total.accounts] == ["ACC-1", "ACC-2"]
        assert [a.account_id for a in by_down.accounts] == ["ACC-2", "ACC-1"]

    def test_invalid_sort(self, as_of, make_change):
        with pytest.raises(ValueError):
            aggregate([make_change()], "1y", as_of, sort_by="size")

    def test_missing_account_and_deployment(self, as_of, make_change):
        hierarchy = aggregate([make_change(account=None, deployment=None, record="r9")], "1y", as_of)

        assert hierarchy.accounts[0].account_id == "unknown"
        assert list(hierarchy.accounts[0].deployments) == ["record:r9"]

    def test_to_dict_shape(self, as_of, make_change):
        out = aggregate([make_change(product="A")], "1y", as_of).to_dict()

        assert out[0]["total_changes"] == 1
        assert out[0]["deployments_affected"] == 1
        assert out[0]["deployments"][0]["products"][0]["product_code"] == "A"


class TestByProductAndSummary:

    def test_by_product_distinct_counts(self, as_of, make_change):
        events = [
            make_change(account="ACC-1", deployment="DEP-1", product="A"),
            make_change(account="ACC-1", deployment="DEP-2", product="A"),
            make_change(account="ACC-2", deployment="DEP-3", product="A"),
            make_change(account="ACC-2", deployment="DEP-3", product="B", classification=DOWN),
        ]

        rollups = by_product(events, "1y", as_of)

        assert [r.product_code for r in rollups] == ["A", "B"]
        assert rollups[0].counts.total == 3
        assert len(rollups[0].accounts) == 2
        assert len(rollups[0].deployments) == 3

    def test_summary(self, as_of, make_change):
        events = [
            make_change(account="ACC-1", product="A", record="r1"),
            make_change(account="ACC-2", deployment="DEP-2", product="B", classification=DOWN, record="r2"),
            make_change(days_ago=800),
        ]

        result = summary(events, "1y", as_of)

        assert result == {
            "time_frame": "1y",
            "total_changes": 2,
            "upgrades": 1,
            "downgrades": 1,
            "unknown": 0,
            "accounts_affected": 2,
            "deployments_affected": 2,
            "products_affected": 2,
            "ps_records_with_changes": 2,
        }
