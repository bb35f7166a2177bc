"""Internal data models for the pronunciation workflow."""

import math
from dataclasses import dataclass
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class AudioMetadata(BaseModel):
    """Caller-supplied description of a recording. Never checked against the bytes."""

    duration: float = Field(..., ge=0.0, description="Duration in seconds")
    sampleRate: int = Field(..., gt=0, description="Sample rate in Hz")
    format: str = Field(..., min_length=1, description="Container/codec extension, e.g. wav")
    size: int = Field(..., ge=0, description="Size in bytes")

    @field_validator('format')
    @classmethod
    def normalize_format(cls, v):
        return v.strip().lstrip('.').lower()


class AnalysisResult(BaseModel):
    """Pronunciation assessment returned by the AI model."""

    overallScore: float = 0.0
    toneAccuracy: float = 0.0
    pronunciationErrors: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    detailedFeedback: str = ""
    usedFallback: bool = False

    @field_validator('overallScore', 'toneAccuracy', mode='before')
    @classmethod
    def clamp_score(cls, v):
        """Coerce to a number in [0, 100] with one decimal place; anything non-numeric is 0."""
        if isinstance(v, bool) or v is None:
            return 0.0
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        if math.isnan(value):
            return 0.0
        return round(max(0.0, min(100.0, value)), 1)

    @field_validator('pronunciationErrors', 'suggestions', mode='before')
    @classmethod
    def coerce_string_list(cls, v):
        if not isinstance(v, list):
            return []
        return [str(item) for item in v if item is not None]


@dataclass
class UploadResult:
    """Outcome of pinning a file to IPFS."""

    ipfs_hash: str
    pin_size: int
    timestamp: str
    is_duplicate: bool = False


@dataclass
class CreatePronunciationAttemptRequest:
    """Input for a single pronunciation analysis run."""

    original_text: str
    audio_buffer: bytes
    audio_metadata: AudioMetadata
    user_id: Optional[UUID] = None
