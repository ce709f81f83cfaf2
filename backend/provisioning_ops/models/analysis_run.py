"""
Analysis run log model.

One row per scheduler run (expiration refresh, package-change refresh,
ghost-account refresh, audit capture). Used by the status endpoints to
report when data was last analyzed and what the run found.
"""

from enum import Enum as PyEnum

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text

from provisioning_ops.db_base import Base
from provisioning_ops.models.base import JSONType, generate_uuid


class AnalysisRunStatus(str, PyEnum):
    """Terminal and in-flight states of a logged run."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class AnalysisRun(Base):
    """Log row for one analysis run."""

    __tablename__ = "analysis_runs"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    job_type = Column(
        String(50),
        nullable=False,
        comment="expiration-refresh, package-change-refresh, ghost-account-refresh, audit-capture"
    )

    status = Column(
        String(20),
        nullable=False,
        default=AnalysisRunStatus.RUNNING.value,
    )

    started_at = Column(DateTime(timezone=True), nullable=False)

    completed_at = Column(DateTime(timezone=True), nullable=True)

    records_scanned = Column(Integer, nullable=False, default=0)

    events_found = Column(Integer, nullable=False, default=0)

    records_skipped = Column(Integer, nullable=False, default=0)

    duration_seconds = Column(Float, nullable=True)

    cancelled = Column(Boolean, nullable=False, default=False)

    error_message = Column(Text, nullable=True)

    parameters = Column(JSONType, nullable=True, default=dict)

    __table_args__ = (
        Index("idx_analysis_run_job_started", "job_type", "started_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AnalysisRun("
            f"id={self.id}, "
            f"job_type={self.job_type}, "
            f"status={self.status}"
            f")>"
        )
