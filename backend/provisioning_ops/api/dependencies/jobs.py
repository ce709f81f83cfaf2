"""
Helpers for routes that start analysis jobs.

A refresh either waits for its run (the default; the request awaits the
asyncio task, it does not hold a thread) or returns 202 right away so the
caller can poll /api/analysis/jobs/{job}.
"""

import asyncio
from typing import Callable, Optional

from fastapi import HTTPException, status

from provisioning_ops.api.dependencies.errors import to_http_error
from provisioning_ops.api.schemas.common import JobAcceptedResponse
from provisioning_ops.errors import ConflictError
from provisioning_ops.services.analysis_scheduler import JobState, RunSummary


async def start_job(start: Callable, wait: bool) -> Optional[RunSummary]:
    """
    Start a job; return its summary when wait is set, else None.

    Raises:
        HTTPException: 409 if the job is already running, 500 if nothing
            could be processed
    """
    try:
        task = start()
    except ConflictError as e:
        raise to_http_error(e)

    if not wait:
        return None

    # Shielded: a client disconnect must not cancel the run itself
    summary = await asyncio.shield(task)
    if summary.status == JobState.FAILED:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "analysis_failed", **summary.to_dict()},
        )
    return summary


def accepted(job_type: str) -> JobAcceptedResponse:
    return JobAcceptedResponse(
        job_type=job_type,
        state=JobState.RUNNING.value,
        message=f"Analysis '{job_type}' started",
    )
