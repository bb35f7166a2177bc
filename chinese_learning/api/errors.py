"""
Mapping of service errors to HTTP responses.
"""

from datetime import datetime

from fastapi import HTTPException

from chinese_learning.services.pronunciation_service import (
    AnalysisFailedError,
    AttemptNotFoundError,
    AttemptSupersededError,
    InvalidAttemptError,
    PersistenceFailedError,
    PronunciationError,
    StatsUpdateFailedError,
    UploadFailedError,
    UserNotFoundError
)

# Checked in order; first isinstance match wins
ERROR_STATUS_CODES = (
    (InvalidAttemptError, 400),
    (AttemptNotFoundError, 404),
    (UserNotFoundError, 404),
    (AttemptSupersededError, 409),
    (UploadFailedError, 502),
    (AnalysisFailedError, 502),
    (PersistenceFailedError, 500),
    (StatsUpdateFailedError, 500),
)


def error_detail(error_type: str, message: str, correlation_id: str) -> dict:
    """Standard error body used in HTTPException details."""
    return {
        "error": error_type,
        "message": message,
        "correlation_id": correlation_id,
        "timestamp": datetime.utcnow().isoformat()
    }


def status_code_for(error: PronunciationError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 500


def to_http_exception(error: PronunciationError, correlation_id: str) -> HTTPException:
    """Build the HTTPException for a service error, keyed on its class."""
    return HTTPException(
        status_code=status_code_for(error),
        detail=error_detail(type(error).__name__, str(error), correlation_id)
    )


def internal_error(operation: str, correlation_id: str) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail=error_detail(
            "InternalServerError",
            f"An unexpected error occurred during {operation}",
            correlation_id
        )
    )
