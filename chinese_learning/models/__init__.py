"""Data models for the Chinese learning backend."""

from .api_models import (
    PronunciationAnalysisResponse,
    PaginatedAttemptsResponse,
    UserStatisticsResponse,
    ExpireAttemptsResponse,
    TTSRequest,
    ChatRequest,
    ChatResponse,
    HealthResponse,
    ErrorResponse
)
from .db_models import (
    Base,
    ChineseLevel,
    ProcessingStatus,
    ProcessingStep,
    User,
    PronunciationAttempt
)
from .internal_models import (
    AudioMetadata,
    AnalysisResult,
    UploadResult,
    CreatePronunciationAttemptRequest
)

__all__ = [
    "PronunciationAnalysisResponse",
    "PaginatedAttemptsResponse",
    "UserStatisticsResponse",
    "ExpireAttemptsResponse",
    "TTSRequest",
    "ChatRequest",
    "ChatResponse",
    "HealthResponse",
    "ErrorResponse",
    "Base",
    "ChineseLevel",
    "ProcessingStatus",
    "ProcessingStep",
    "User",
    "PronunciationAttempt",
    "AudioMetadata",
    "AnalysisResult",
    "UploadResult",
    "CreatePronunciationAttemptRequest"
]
