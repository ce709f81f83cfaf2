"""
Tests for the analysis run log helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest

from provisioning_ops.services.analysis_run_log import format_age

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "delta,expected",
    [
        (timedelta(seconds=5), "just now"),
        (timedelta(minutes=1), "1 minute ago"),
        (timedelta(minutes=5, seconds=30), "5 minutes ago"),
        (timedelta(hours=2), "2 hours ago"),
        (timedelta(days=3, hours=1), "3 days ago"),
    ],
)
def test_format_age(delta, expected):
    assert format_age(NOW - delta, now=NOW) == expected


def test_format_age_naive_timestamp_is_utc():
    # SQLite hands back naive datetimes
    assert format_age(datetime(2025, 6, 1, 11, 0), now=NOW) == "1 hour ago"


def test_format_age_none():
    assert format_age(None) is None
