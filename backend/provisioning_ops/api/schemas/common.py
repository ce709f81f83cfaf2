"""
Shared schema base and job summary models.

Request and response bodies use camelCase on the wire; Python code keeps
snake_case field names.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys; accepts either case on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RunSummaryResponse(CamelModel):
    """Summary of a finished analysis run."""

    job_type: str
    status: str
    started_at: str
    completed_at: Optional[str] = None
    records_scanned: int = 0
    events_found: int = 0
    records_skipped: int = 0
    duration_seconds: float = 0.0
    cancelled: bool = False
    first_error: Optional[str] = None
    run_id: Optional[str] = None


class JobProgress(CamelModel):
    total: int
    done: int


class JobStatusResponse(CamelModel):
    job_type: str
    state: str
    progress: Optional[JobProgress] = None
    last_run: Optional[RunSummaryResponse] = None


class JobAcceptedResponse(CamelModel):
    """Returned when a refresh is started without waiting for it."""

    job_type: str
    state: str
    message: str
