"""Translate import engine exceptions into HTTP errors."""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

from dbimport.core.errors import (
    FatalBatchError,
    ImporterError,
    InsufficientMemoryError,
    LockContentionError,
    MappingValidationError,
    ProgressStoreError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[ImporterError], int]] = [
    (LockContentionError, status.HTTP_409_CONFLICT),
    (InsufficientMemoryError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ProgressStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (FatalBatchError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def to_http_exception(exc: ImporterError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_400_BAD_REQUEST

    if status_code >= 500:
        logger.error(f"Import request failed: {exc}")
    if isinstance(exc, MappingValidationError):
        return HTTPException(status_code=status_code, detail={"errors": exc.errors})
    return HTTPException(status_code=status_code, detail=str(exc))
