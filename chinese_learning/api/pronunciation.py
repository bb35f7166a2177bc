"""
Pronunciation API endpoints for analysis, history and statistics.
"""

import os
import time
from typing import List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from pydantic import ValidationError

from chinese_learning.api.errors import error_detail, internal_error, to_http_exception
from chinese_learning.config import settings
from chinese_learning.middleware import get_correlation_id
from chinese_learning.models.api_models import (
    ExpireAttemptsResponse,
    PaginatedAttemptsResponse,
    PronunciationAnalysisResponse,
    UserStatisticsResponse
)
from chinese_learning.models.internal_models import AudioMetadata, CreatePronunciationAttemptRequest
from chinese_learning.observability import record_analysis_metrics, trace_function
from chinese_learning.services.pronunciation_service import (
    PronunciationError,
    PronunciationService,
    get_pronunciation_service
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/pronunciation", tags=["pronunciation"])

DEFAULT_AUDIO_FORMAT = "wav"


def infer_audio_format(upload: UploadFile) -> str:
    """Audio format from the upload's file extension, then its content type."""
    extension = os.path.splitext(upload.filename or "")[1].lstrip(".")
    if extension:
        return extension
    content_type = upload.content_type or ""
    if content_type.startswith("audio/"):
        return content_type.split("/", 1)[1]
    return DEFAULT_AUDIO_FORMAT


@router.post("/analyze", response_model=PronunciationAnalysisResponse)
@trace_function("pronunciation_analysis_endpoint")
async def analyze_pronunciation(
    http_request: Request,
    file: UploadFile = File(..., description="Recorded audio"),
    originalText: str = Form(..., description="Chinese text the learner read"),
    duration: float = Form(..., description="Duration in seconds"),
    sampleRate: int = Form(..., description="Sample rate in Hz"),
    userId: Optional[UUID] = Form(None),
    format: Optional[str] = Form(None),
    size: Optional[int] = Form(None),
    service: PronunciationService = Depends(get_pronunciation_service)
) -> PronunciationAnalysisResponse:
    """
    Analyze a learner's recording of a Chinese text.

    Pins the audio to IPFS, scores it with Gemini, stores the attempt and
    updates the learner's statistics when a user ID is given.
    """
    correlation_id = get_correlation_id(http_request)
    start_time = time.time()

    # Read at most one byte past the limit
    audio_buffer = await file.read(settings.max_audio_bytes + 1)
    if len(audio_buffer) > settings.max_audio_bytes:
        logger.warning("Audio upload too large", limit_bytes=settings.max_audio_bytes)
        raise HTTPException(
            status_code=413,
            detail=error_detail(
                "PayloadTooLarge",
                f"Audio file exceeds the maximum size of {settings.max_audio_bytes} bytes",
                correlation_id
            )
        )

    try:
        metadata = AudioMetadata(
            duration=duration,
            sampleRate=sampleRate,
            format=format or infer_audio_format(file),
            size=size if size is not None else len(audio_buffer)
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail=error_detail("InvalidAttemptError", f"Invalid audio metadata: {e}", correlation_id)
        )

    logger.info(
        "Pronunciation analysis request received",
        user_id=str(userId) if userId else None,
        original_text=originalText,
        audio_bytes=len(audio_buffer),
        audio_format=metadata.format
    )

    try:
        response = await service.analyze_pronunciation(
            CreatePronunciationAttemptRequest(
                original_text=originalText,
                audio_buffer=audio_buffer,
                audio_metadata=metadata,
                user_id=userId
            )
        )

    except PronunciationError as e:
        record_analysis_metrics(
            success=False,
            processing_time=time.time() - start_time,
            failure_kind=type(e).__name__
        )
        logger.error(
            "Pronunciation analysis failed",
            error_type=type(e).__name__,
            error=str(e),
            attempt_id=str(e.attempt_id) if e.attempt_id else None
        )
        raise to_http_exception(e, correlation_id)

    except Exception as e:
        logger.error("Unexpected pronunciation analysis error", error=str(e))
        raise internal_error("pronunciation analysis", correlation_id)

    record_analysis_metrics(
        success=True,
        processing_time=time.time() - start_time,
        overall_score=response.overallScore,
        used_fallback=response.analysisResult.usedFallback
    )
    logger.info(
        "Pronunciation analysis completed",
        attempt_id=str(response.id),
        overall_score=response.overallScore
    )
    return response


@router.get("/attempts", response_model=PaginatedAttemptsResponse)
async def list_attempts(
    http_request: Request,
    userId: UUID = Query(...),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: PronunciationService = Depends(get_pronunciation_service)
) -> PaginatedAttemptsResponse:
    """List a learner's attempts, newest first."""
    try:
        return await service.get_user_pronunciation_attempts(userId, page=page, limit=limit)
    except PronunciationError as e:
        raise to_http_exception(e, get_correlation_id(http_request))


@router.get("/attempts/{attempt_id}", response_model=PronunciationAnalysisResponse)
async def get_attempt(
    attempt_id: UUID,
    http_request: Request,
    service: PronunciationService = Depends(get_pronunciation_service)
) -> PronunciationAnalysisResponse:
    """Get one attempt."""
    try:
        return await service.get_pronunciation_attempt(attempt_id)
    except PronunciationError as e:
        raise to_http_exception(e, get_correlation_id(http_request))


@router.get("/users/{user_id}/statistics", response_model=UserStatisticsResponse)
async def get_user_statistics(
    user_id: UUID,
    http_request: Request,
    service: PronunciationService = Depends(get_pronunciation_service)
) -> UserStatisticsResponse:
    """Get a learner's running statistics and recent trend."""
    try:
        return await service.get_user_statistics(user_id)
    except PronunciationError as e:
        raise to_http_exception(e, get_correlation_id(http_request))


@router.post("/attempts/expire", response_model=ExpireAttemptsResponse)
async def expire_attempts(
    http_request: Request,
    olderThanMinutes: Optional[int] = Query(None, ge=1),
    service: PronunciationService = Depends(get_pronunciation_service)
) -> ExpireAttemptsResponse:
    """Fail attempts stuck in processing longer than the cutoff."""
    try:
        expired: List[UUID] = await service.expire_stale_attempts(olderThanMinutes)
    except PronunciationError as e:
        raise to_http_exception(e, get_correlation_id(http_request))

    logger.info("Expired stale attempts", expired=len(expired))
    return ExpireAttemptsResponse(expired=len(expired), attemptIds=expired)


@router.post("/attempts/{attempt_id}/resume", response_model=PronunciationAnalysisResponse)
async def resume_attempt(
    attempt_id: UUID,
    http_request: Request,
    olderThanMinutes: Optional[int] = Query(None, ge=1),
    service: PronunciationService = Depends(get_pronunciation_service)
) -> PronunciationAnalysisResponse:
    """Re-run analysis for an interrupted attempt whose audio is already pinned."""
    try:
        return await service.resume_attempt(attempt_id, olderThanMinutes)
    except PronunciationError as e:
        logger.error("Resume failed", attempt_id=str(attempt_id), error_type=type(e).__name__, error=str(e))
        raise to_http_exception(e, get_correlation_id(http_request))
