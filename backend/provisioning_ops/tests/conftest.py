"""
Root test configuration and fixtures.

Provides database fixtures and record/snapshot factories used by the
unit and integration tests.

- session_factory: sessionmaker bound to a fresh SQLite file per test
  (capture and the scheduler open their own sessions from worker threads)
- db_session: one session from that factory
- make_record / make_payload / make_snapshot: builders for test data
- make_yaml_config: writes YAML policy files to a temp dir
"""

import json
import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

# Set test environment
os.environ.setdefault("ENV", "test")

# Fixed evaluation instant shared by time-dependent tests
AS_OF = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def as_of() -> datetime:
    return AS_OF


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """
    SQLite database in a temp file.

    A file (not :memory:) so every session opened from a worker thread sees
    the same data.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'engine.db'}",
        connect_args={"check_same_thread": False},
    )

    from provisioning_ops.db_base import Base
    from provisioning_ops import models  # noqa: F401 - registers tables

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def policy():
    from provisioning_ops.config.analysis_policy import AnalysisPolicy

    # One worker: SQLite serializes writers
    return AnalysisPolicy(max_workers=1)


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Data factories
# =============================================================================


@pytest.fixture
def make_payload():
    """
    Build a raw payload in the nested provisioningDetail shape.

    Usage:
        make_payload(models=[("IC-DESIGNER", "Premium", "2025-07-01")])
    """
    def _entry(code, tier=None, end=None, name=None):
        entry = {"productCode": code}
        if tier is not None:
            entry["packageName"] = tier
        if end is not None:
            entry["endDate"] = end
        if name is not None:
            entry["name"] = name
        return entry

    def _make(models=(), data=(), apps=(), as_json=False):
        payload = {
            "properties": {
                "provisioningDetail": {
                    "entitlements": {
                        "modelEntitlements": [_entry(*m) for m in models],
                        "dataEntitlements": [_entry(*d) for d in data],
                        "appEntitlements": [_entry(*a) for a in apps],
                    }
                }
            }
        }
        return json.dumps(payload) if as_json else payload
    return _make


@pytest.fixture
def make_record(make_payload):
    """Factory for RawProvisioningRecord with sensible defaults."""
    from provisioning_ops.integrations.sources.models import RawProvisioningRecord

    def _make(
        record_id="a0X000001",
        record_name="PS-1001",
        account_id="ACC-1",
        deployment_id="DEP-1",
        request_type="New",
        status="Tenant Request Completed",
        created_at=None,
        payload=None,
        models=(),
        data=(),
        apps=(),
    ):
        if payload is None:
            payload = make_payload(models=models, data=data, apps=apps)
        return RawProvisioningRecord(
            record_id=record_id,
            record_name=record_name,
            account_id=account_id,
            deployment_id=deployment_id,
            request_type=request_type,
            status=status,
            created_at=created_at or (AS_OF - timedelta(days=90)),
            payload=payload,
            source="test",
        )
    return _make


@pytest.fixture
def make_entitlement():
    from provisioning_ops.services.payload_normalizer import Entitlement, EntitlementCategory

    def _make(code="IC-DESIGNER", tier=None, expiry=None, category=EntitlementCategory.MODEL, name=None):
        return Entitlement(
            product_code=code,
            category=category,
            package_tier=tier,
            expiry=expiry,
            product_name=name,
        )
    return _make


@pytest.fixture
def make_snapshot():
    """Factory for in-memory Snapshot values (no database)."""
    from provisioning_ops.services.snapshot_store import Snapshot, compute_fingerprint

    def _make(
        record_id="a0X000001",
        entitlements=(),
        status="Tenant Request Completed",
        captured_at=None,
        record_name="PS-1001",
        account_id="ACC-1",
        deployment_id="DEP-1",
        request_type="New",
        record_created_at=None,
        snapshot_id=None,
    ):
        entitlements = tuple(entitlements)
        return Snapshot(
            id=snapshot_id or str(uuid.uuid4()),
            record_id=record_id,
            captured_at=captured_at or AS_OF,
            status=status,
            entitlements=entitlements,
            fingerprint=compute_fingerprint(status, entitlements),
            record_name=record_name,
            account_id=account_id,
            deployment_id=deployment_id,
            request_type=request_type,
            record_created_at=record_created_at,
        )
    return _make


# =============================================================================
# Config fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("analysis_policy.yml", {"package_tiers": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
