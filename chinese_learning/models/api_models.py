"""Pydantic models for API requests and responses."""

from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .internal_models import AnalysisResult


class PronunciationAnalysisResponse(BaseModel):
    """Public view of a pronunciation attempt."""

    id: UUID = Field(..., description="Attempt identifier")
    originalText: str = Field(..., description="Chinese text the learner pronounced")
    audioFileUrl: str = Field(..., description="Public IPFS gateway URL of the recording")
    analysisResult: AnalysisResult = Field(..., description="AI pronunciation assessment")
    overallScore: float = Field(..., ge=0.0, le=100.0, description="Overall score (0-100)")
    processingStatus: str = Field(..., description="pending | processing | completed | failed")
    createdAt: datetime = Field(..., description="Submission timestamp")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": "4f1c1f9e-8a8b-4c8e-9a55-2f0f6d1b7c11",
            "originalText": "你好",
            "audioFileUrl": "https://gateway.example.com/ipfs/QmHash",
            "analysisResult": {
                "overallScore": 82.5,
                "toneAccuracy": 78.0,
                "pronunciationErrors": ["好 pronounced with tone 4"],
                "suggestions": ["Practise the dipping third tone"],
                "detailedFeedback": "Phát âm khá tốt.",
                "usedFallback": False
            },
            "overallScore": 82.5,
            "processingStatus": "completed",
            "createdAt": "2024-01-01T12:00:00Z"
        }
    })


class PaginatedAttemptsResponse(BaseModel):
    """Page of a learner's attempts, newest first."""

    attempts: List[PronunciationAnalysisResponse]
    total: int = Field(..., ge=0)
    totalPages: int = Field(..., ge=0)


class UserStatisticsResponse(BaseModel):
    """Summary statistics for a learner."""

    totalAttempts: int = Field(..., ge=0, description="Number of completed attempts")
    averageScore: float = Field(..., description="Running mean of completed attempt scores")
    bestScore: float = Field(..., description="Best score among the 10 most recent completed attempts")
    recentImprovement: float = Field(..., description="Mean of the newest 5 minus mean of the 5 before")


class ExpireAttemptsResponse(BaseModel):
    """Result of expiring attempts stuck in processing."""

    expired: int = Field(..., ge=0)
    attemptIds: List[UUID]


class TTSRequest(BaseModel):
    """Request model for Vietnamese text-to-speech. Blank text is rejected by the endpoint with 400."""

    text: str = Field("", description="Text to synthesize")


class ChatRequest(BaseModel):
    """Request model for conversation practice."""

    message: str = Field(..., min_length=1, description="Learner's message")
    context: Optional[str] = Field(None, description="Previous conversation turns")


class ChatResponse(BaseModel):
    """Response model for conversation practice."""

    reply: str


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(..., description="Health check timestamp")
    version: str = Field(..., description="Service version")
    components: Optional[Dict[str, str]] = Field(None, description="Per-dependency status")


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    correlation_id: str = Field(..., description="Request correlation ID for tracing")
    timestamp: datetime = Field(..., description="Error timestamp")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "UploadFailedError",
            "message": "Failed to upload audio file: IPFS upload failed: HTTP 401",
            "correlation_id": "req_123456789",
            "timestamp": "2024-01-01T12:00:00Z"
        }
    })
