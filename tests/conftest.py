"""
Shared fixtures.
"""

import uuid
from datetime import datetime, timedelta

import pytest

from chinese_learning.clients.database import DatabaseManager
from chinese_learning.models.db_models import (
    ChineseLevel,
    ProcessingStatus,
    PronunciationAttempt,
    User
)


@pytest.fixture
def db_manager():
    """Database manager on a fresh in-memory SQLite database."""
    manager = DatabaseManager(database_url="sqlite://")
    manager.create_schema()
    yield manager
    manager.dispose()


@pytest.fixture
def make_user(db_manager):
    """Factory inserting a user row."""
    async def _make_user(**overrides) -> User:
        suffix = uuid.uuid4().hex[:8]
        fields = {
            "email": f"learner-{suffix}@example.com",
            "username": f"learner-{suffix}",
            "level": ChineseLevel.HSK2,
            "total_attempts": 0,
            "average_score": None,
        }
        fields.update(overrides)
        return await db_manager.users.create_user(User(**fields))

    return _make_user


@pytest.fixture
def make_attempt(db_manager):
    """Factory inserting a pronunciation attempt row."""
    async def _make_attempt(**overrides) -> PronunciationAttempt:
        fields = {
            "id": uuid.uuid4(),
            "original_text": "你好",
            "processing_status": ProcessingStatus.COMPLETED.value,
            "overall_score": 80.0,
            "created_at": datetime.utcnow(),
        }
        fields.update(overrides)
        return await db_manager.attempts.create_attempt(PronunciationAttempt(**fields))

    return _make_attempt


@pytest.fixture
def minutes_ago():
    def _minutes_ago(minutes: int) -> datetime:
        return datetime.utcnow() - timedelta(minutes=minutes)
    return _minutes_ago
