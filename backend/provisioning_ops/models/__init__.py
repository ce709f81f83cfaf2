"""
Database models for snapshots, derived change events, ghost accounts and
analysis runs.
"""

from provisioning_ops.models.base import TimestampMixin, JSONType
from provisioning_ops.models.ps_snapshot import PSRecordSnapshot
from provisioning_ops.models.change_events import StatusChangeRecord, PackageChangeRecord
from provisioning_ops.models.ghost_account import GhostAccount, GhostAccountReview
from provisioning_ops.models.analysis_run import AnalysisRun, AnalysisRunStatus

__all__ = [
    "TimestampMixin",
    "JSONType",
    "PSRecordSnapshot",
    "StatusChangeRecord",
    "PackageChangeRecord",
    "GhostAccount",
    "GhostAccountReview",
    "AnalysisRun",
    "AnalysisRunStatus",
]
