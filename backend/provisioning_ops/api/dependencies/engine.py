"""
Engine dependencies for the API routers.

One AnalysisEngine (and with it one scheduler) exists per process so the
"one run per job kind" guarantee holds across requests. Tests override
get_analysis_engine and get_analysis_policy through
app.dependency_overrides.
"""

import logging
from threading import Lock
from typing import Optional

from fastapi import HTTPException, status

from provisioning_ops.config.analysis_policy import AnalysisPolicy, get_analysis_policy_loader
from provisioning_ops.database.session import get_session_factory
from provisioning_ops.integrations.sources.client import get_source_connectors
from provisioning_ops.services.analysis_engine import AnalysisEngine

logger = logging.getLogger(__name__)

_engine: Optional[AnalysisEngine] = None
_engine_lock = Lock()


def get_analysis_policy() -> AnalysisPolicy:
    return get_analysis_policy_loader().get_policy()


def build_analysis_engine() -> AnalysisEngine:
    """Create the process-wide engine from environment configuration."""
    try:
        session_factory = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )
    return AnalysisEngine(
        session_factory=session_factory,
        policy=get_analysis_policy(),
        connectors=get_source_connectors(),
    )


def get_analysis_engine() -> AnalysisEngine:
    """FastAPI dependency returning the engine singleton."""
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = build_analysis_engine()
                logger.info(
                    "Analysis engine created",
                    extra={"connectors": [c.name for c in _engine.connectors]},
                )
    return _engine


def reset_analysis_engine() -> None:
    """Close and drop the engine singleton (shutdown and tests)."""
    global _engine
    with _engine_lock:
        if _engine is not None:
            _engine.close()
        _engine = None
