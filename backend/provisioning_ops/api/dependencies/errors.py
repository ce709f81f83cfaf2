"""
Translation of engine errors into HTTP errors.
"""

import logging

from fastapi import HTTPException, status

from provisioning_ops.errors import (
    ConflictError,
    EngineError,
    RecordNotFoundError,
    StorageError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (ConflictError, status.HTTP_409_CONFLICT),
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_error(error: EngineError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.to_dict())
    logger.error("Unhandled engine error", extra={"error": repr(error)})
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=error.to_dict(),
    )
