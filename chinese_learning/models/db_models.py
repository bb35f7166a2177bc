"""
SQLAlchemy ORM models for learners and pronunciation attempts.

The schema is created with ``Base.metadata.create_all`` at startup;
there are no migrations.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


class ChineseLevel(str, enum.Enum):
    """HSK proficiency scale plus a native tier."""

    HSK1 = "HSK1"
    HSK2 = "HSK2"
    HSK3 = "HSK3"
    HSK4 = "HSK4"
    HSK5 = "HSK5"
    HSK6 = "HSK6"
    NATIVE = "NATIVE"


class ProcessingStatus(str, enum.Enum):
    """Lifecycle status of a pronunciation attempt."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingStep(str, enum.Enum):
    """Last workflow step an attempt reached, in execution order."""

    CREATED = "created"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    STATS_UPDATED = "stats_updated"


# Steps of a processing attempt whose audio is pinned, so analysis can be re-run
RESUMABLE_STEPS = {
    ProcessingStep.UPLOADED.value,
    ProcessingStep.ANALYZING.value,
}


def empty_analysis_result() -> dict:
    """Zeroed analysis payload stored before the AI call completes."""
    return {
        "overallScore": 0,
        "toneAccuracy": 0,
        "pronunciationErrors": [],
        "suggestions": [],
        "detailedFeedback": "",
        "usedFallback": False,
    }


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    level = Column(Enum(ChineseLevel, name="chinese_level"), nullable=False, default=ChineseLevel.HSK1)
    preferences = Column(JSON, nullable=True)
    total_attempts = Column(Integer, nullable=False, default=0)
    average_score = Column(Numeric(4, 1, asdecimal=False), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    pronunciation_attempts = relationship("PronunciationAttempt", back_populates="user")


class PronunciationAttempt(Base):
    __tablename__ = "pronunciation_attempts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    original_text = Column(Text, nullable=False)
    audio_file_url = Column(String(500), nullable=False, default="")
    ipfs_hash = Column(String(100), nullable=False, default="")
    analysis_result = Column(JSON, nullable=False, default=empty_analysis_result)
    audio_metadata = Column(JSON, nullable=True)
    overall_score = Column(Numeric(4, 1, asdecimal=False), nullable=False, default=0, index=True)
    processing_status = Column(String(20), nullable=False, default=ProcessingStatus.PENDING.value, index=True)
    processing_step = Column(String(20), nullable=False, default=ProcessingStep.CREATED.value)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="pronunciation_attempts")

    __table_args__ = (
        Index("ix_pronunciation_attempts_user_id_created_at", "user_id", "created_at"),
    )
