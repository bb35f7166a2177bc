"""
Tests for the pronunciation analysis service.
"""

import uuid
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from chinese_learning.models.db_models import (
    ProcessingStatus,
    ProcessingStep,
    PronunciationAttempt
)
from chinese_learning.models.internal_models import (
    AnalysisResult,
    AudioMetadata,
    CreatePronunciationAttemptRequest,
    UploadResult
)
from chinese_learning.services.pronunciation_service import (
    AnalysisFailedError,
    AttemptNotFoundError,
    AttemptSupersededError,
    InvalidAttemptError,
    PersistenceFailedError,
    PronunciationError,
    PronunciationService,
    StatsUpdateFailedError,
    UploadFailedError,
    UserNotFoundError
)

GATEWAY = "https://gw.example/ipfs/"


@pytest.fixture
def mock_storage():
    """Storage double that pins everything as QmHash."""
    storage = Mock()
    storage.upload_audio = AsyncMock(return_value=UploadResult(
        ipfs_hash="QmHash",
        pin_size=4,
        timestamp="2024-01-01T00:00:00Z"
    ))
    storage.get_public_url = Mock(side_effect=lambda ipfs_hash: f"{GATEWAY}{ipfs_hash}")
    storage.unpin_file = AsyncMock(return_value=True)
    return storage


@pytest.fixture
def analysis_result():
    return AnalysisResult(
        overallScore=85,
        toneAccuracy=80,
        pronunciationErrors=["好 tone"],
        suggestions=["slow down"],
        detailedFeedback="Tốt."
    )


@pytest.fixture
def mock_analyzer(analysis_result):
    analyzer = Mock()
    analyzer.analyze_pronunciation = AsyncMock(return_value=analysis_result)
    return analyzer


@pytest.fixture
def service(db_manager, mock_storage, mock_analyzer):
    return PronunciationService(
        db_manager=db_manager,
        storage=mock_storage,
        analyzer=mock_analyzer,
        unpin_on_failure=True
    )


@pytest.fixture
def audio_metadata():
    return AudioMetadata(duration=2.0, sampleRate=16000, format="wav", size=4)


@pytest.fixture
def make_request(audio_metadata):
    def _make_request(user_id=None, text="你好"):
        return CreatePronunciationAttemptRequest(
            original_text=text,
            audio_buffer=b"RIFF",
            audio_metadata=audio_metadata,
            user_id=user_id
        )
    return _make_request


def count_attempts(db_manager) -> int:
    with db_manager.session_factory() as session:
        return session.scalar(select(func.count()).select_from(PronunciationAttempt))


class TestAnalyzePronunciation:
    """Tests for the analysis workflow."""

    @pytest.mark.asyncio
    async def test_completed_with_user(self, service, db_manager, make_user, make_request, mock_storage, mock_analyzer):
        user = await make_user()

        response = await service.analyze_pronunciation(make_request(user_id=user.id))

        assert response.processingStatus == "completed"
        assert response.overallScore == 85.0
        assert response.audioFileUrl == f"{GATEWAY}QmHash"
        assert response.analysisResult.suggestions == ["slow down"]
        assert response.analysisResult.usedFallback is False

        row = await db_manager.attempts.get_attempt(response.id)
        assert row.ipfs_hash == "QmHash"
        assert row.processing_step == ProcessingStep.STATS_UPDATED.value
        assert row.audio_metadata["sampleRate"] == 16000

        refreshed = await db_manager.users.get_user_by_id(user.id)
        assert refreshed.total_attempts == 1
        assert refreshed.average_score == 85.0

        mock_analyzer.analyze_pronunciation.assert_awaited_once_with(f"{GATEWAY}QmHash", "你好", "HSK2")
        upload_kwargs = mock_storage.upload_audio.call_args.kwargs
        assert upload_kwargs["name"] == f"Pronunciation Analysis {response.id}"
        assert upload_kwargs["keyvalues"] == {
            "attemptId": str(response.id),
            "originalDuration": "2.0",
            "analysisType": "pronunciation",
        }
        mock_storage.unpin_file.assert_not_called()

    @pytest.mark.asyncio
    async def test_anonymous_attempt_skips_statistics(self, service, db_manager, make_request, mock_analyzer):
        response = await service.analyze_pronunciation(make_request())

        row = await db_manager.attempts.get_attempt(response.id)
        assert row.user_id is None
        assert row.processing_step == ProcessingStep.ANALYZED.value
        assert mock_analyzer.analyze_pronunciation.call_args.args[2] == "Beginner"

    @pytest.mark.asyncio
    async def test_unknown_user_is_skipped(self, service, db_manager, make_request, mock_analyzer):
        response = await service.analyze_pronunciation(make_request(user_id=uuid.uuid4()))

        assert response.processingStatus == "completed"
        assert mock_analyzer.analyze_pronunciation.call_args.args[2] == "Beginner"
        row = await db_manager.attempts.get_attempt(response.id)
        assert row.processing_step == ProcessingStep.ANALYZED.value

    @pytest.mark.asyncio
    async def test_fallback_result_is_stored(self, service, db_manager, make_request, mock_analyzer):
        mock_analyzer.analyze_pronunciation.return_value = AnalysisResult(
            overallScore=75,
            toneAccuracy=70,
            pronunciationErrors=["could not parse"],
            suggestions=["retry with clearer audio"],
            detailedFeedback="garbled",
            usedFallback=True
        )

        response = await service.analyze_pronunciation(make_request())

        row = await db_manager.attempts.get_attempt(response.id)
        assert response.analysisResult.usedFallback is True
        assert row.analysis_result["usedFallback"] is True
        assert row.overall_score == 75.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   "])
    async def test_empty_text_rejected_before_persisting(self, service, db_manager, make_request, mock_storage, text):
        with pytest.raises(InvalidAttemptError):
            await service.analyze_pronunciation(make_request(text=text))

        assert count_attempts(db_manager) == 0
        mock_storage.upload_audio.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_audio_rejected(self, service, db_manager, audio_metadata):
        request = CreatePronunciationAttemptRequest(
            original_text="你好",
            audio_buffer=b"",
            audio_metadata=audio_metadata
        )

        with pytest.raises(InvalidAttemptError):
            await service.analyze_pronunciation(request)

        assert count_attempts(db_manager) == 0


class TestAnalyzeFailures:
    """Tests for failure handling and compensation."""

    @pytest.mark.asyncio
    async def test_upload_failure(self, service, db_manager, make_request, mock_storage, mock_analyzer):
        mock_storage.upload_audio.side_effect = RuntimeError("IPFS upload failed: HTTP 401")

        with pytest.raises(UploadFailedError) as exc_info:
            await service.analyze_pronunciation(make_request())

        error = exc_info.value
        assert str(error) == "Failed to upload audio file: IPFS upload failed: HTTP 401"
        assert isinstance(error.cause, RuntimeError)

        row = await db_manager.attempts.get_attempt(error.attempt_id)
        assert row.processing_status == ProcessingStatus.FAILED.value
        assert row.processing_step == ProcessingStep.UPLOADING.value
        assert row.audio_file_url == ""
        assert row.error_message == str(error)

        mock_analyzer.analyze_pronunciation.assert_not_called()
        mock_storage.unpin_file.assert_not_called()

    @pytest.mark.asyncio
    async def test_analysis_failure_unpins_and_keeps_url(self, service, db_manager, make_user, make_request, mock_storage, mock_analyzer):
        user = await make_user(total_attempts=2, average_score=70.0)
        mock_analyzer.analyze_pronunciation.side_effect = RuntimeError("quota exceeded")

        with pytest.raises(AnalysisFailedError) as exc_info:
            await service.analyze_pronunciation(make_request(user_id=user.id))

        assert str(exc_info.value) == "AI analysis failed: quota exceeded"

        row = await db_manager.attempts.get_attempt(exc_info.value.attempt_id)
        assert row.processing_status == ProcessingStatus.FAILED.value
        assert row.processing_step == ProcessingStep.ANALYZING.value
        assert row.audio_file_url == f"{GATEWAY}QmHash"
        assert row.ipfs_hash == "QmHash"
        assert row.error_message == "AI analysis failed: quota exceeded"

        mock_storage.unpin_file.assert_awaited_once_with("QmHash")

        refreshed = await db_manager.users.get_user_by_id(user.id)
        assert refreshed.total_attempts == 2
        assert refreshed.average_score == 70.0

    @pytest.mark.asyncio
    async def test_analysis_failure_keeps_pin_when_disabled(self, db_manager, make_request, mock_storage, mock_analyzer):
        service = PronunciationService(
            db_manager=db_manager,
            storage=mock_storage,
            analyzer=mock_analyzer,
            unpin_on_failure=False
        )
        mock_analyzer.analyze_pronunciation.side_effect = RuntimeError("boom")

        with pytest.raises(AnalysisFailedError):
            await service.analyze_pronunciation(make_request())

        mock_storage.unpin_file.assert_not_called()

    @pytest.mark.asyncio
    async def test_unpin_failure_does_not_mask_error(self, service, make_request, mock_storage, mock_analyzer):
        mock_analyzer.analyze_pronunciation.side_effect = RuntimeError("boom")
        mock_storage.unpin_file.side_effect = RuntimeError("pinata down")

        with pytest.raises(AnalysisFailedError):
            await service.analyze_pronunciation(make_request())

    @pytest.mark.asyncio
    async def test_stats_failure_marks_attempt_failed(self, service, db_manager, make_user, make_request, mock_storage):
        user = await make_user()
        db_manager.users.update_statistics = AsyncMock(side_effect=SQLAlchemyError("database is locked"))

        with pytest.raises(StatsUpdateFailedError) as exc_info:
            await service.analyze_pronunciation(make_request(user_id=user.id))

        row = await db_manager.attempts.get_attempt(exc_info.value.attempt_id)
        assert row.processing_status == ProcessingStatus.FAILED.value
        assert row.processing_step == ProcessingStep.ANALYZED.value
        assert row.overall_score == 85.0
        assert row.audio_file_url == f"{GATEWAY}QmHash"
        mock_storage.unpin_file.assert_awaited_once_with("QmHash")

    @pytest.mark.asyncio
    async def test_finalize_persistence_failure(self, make_request, mock_storage, mock_analyzer):
        db = Mock()
        db.attempts.create_attempt = AsyncMock(side_effect=lambda attempt: attempt)
        db.attempts.update_attempt = AsyncMock(side_effect=[
            1,  # processing
            1,  # upload location
            1,  # analyzing step
            SQLAlchemyError("connection reset"),  # analysis result
            1,  # mark failed
        ])
        service = PronunciationService(db_manager=db, storage=mock_storage, analyzer=mock_analyzer)

        with pytest.raises(PersistenceFailedError, match="save analysis result"):
            await service.analyze_pronunciation(make_request())

        failed_call = db.attempts.update_attempt.call_args_list[-1]
        assert failed_call.kwargs["processing_status"] == ProcessingStatus.FAILED.value
        mock_storage.unpin_file.assert_awaited_once_with("QmHash")

    @pytest.mark.asyncio
    async def test_create_failure_has_no_attempt(self, make_request, mock_storage, mock_analyzer):
        db = Mock()
        db.attempts.create_attempt = AsyncMock(side_effect=SQLAlchemyError("no such table"))
        db.attempts.update_attempt = AsyncMock()
        service = PronunciationService(db_manager=db, storage=mock_storage, analyzer=mock_analyzer)

        with pytest.raises(PersistenceFailedError) as exc_info:
            await service.analyze_pronunciation(make_request())

        assert exc_info.value.attempt_id is None
        db.attempts.update_attempt.assert_not_called()
        mock_storage.upload_audio.assert_not_called()

    def test_error_variants_share_base(self):
        for error_class in (
            InvalidAttemptError,
            UploadFailedError,
            AnalysisFailedError,
            PersistenceFailedError,
            AttemptSupersededError,
            StatsUpdateFailedError,
            AttemptNotFoundError,
            UserNotFoundError,
        ):
            assert issubclass(error_class, PronunciationError)


class TestQueries:
    """Tests for attempt and statistics queries."""

    @pytest.mark.asyncio
    async def test_get_attempt_not_found(self, service):
        with pytest.raises(AttemptNotFoundError):
            await service.get_pronunciation_attempt(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_get_attempt(self, service, make_request):
        created = await service.analyze_pronunciation(make_request())

        fetched = await service.get_pronunciation_attempt(created.id)

        assert fetched == created

    @pytest.mark.asyncio
    async def test_list_attempts_pagination(self, service, make_user, make_attempt):
        user = await make_user()
        base = datetime(2024, 1, 1)
        for index in range(15):
            await make_attempt(user_id=user.id, created_at=base + timedelta(minutes=index))

        page = await service.get_user_pronunciation_attempts(user.id, page=2, limit=10)

        assert page.total == 15
        assert page.totalPages == 2
        assert len(page.attempts) == 5

    @pytest.mark.asyncio
    async def test_list_attempts_empty(self, service):
        page = await service.get_user_pronunciation_attempts(uuid.uuid4())

        assert page.total == 0
        assert page.totalPages == 0
        assert page.attempts == []

    @pytest.mark.asyncio
    async def test_list_attempts_rejects_bad_page(self, service):
        with pytest.raises(InvalidAttemptError):
            await service.get_user_pronunciation_attempts(uuid.uuid4(), page=0)

    @pytest.mark.asyncio
    async def test_user_statistics(self, service, make_user, make_attempt):
        user = await make_user(total_attempts=3, average_score=70.0)
        base = datetime(2024, 1, 1)
        for index, score in enumerate([60.0, 70.0, 80.0]):
            await make_attempt(user_id=user.id, overall_score=score, created_at=base + timedelta(minutes=index))

        stats = await service.get_user_statistics(user.id)

        assert stats.totalAttempts == 3
        assert stats.averageScore == 70.0
        assert stats.bestScore == 80.0
        assert stats.recentImprovement == 0.0

    @pytest.mark.asyncio
    async def test_user_statistics_missing_user(self, service):
        with pytest.raises(UserNotFoundError):
            await service.get_user_statistics(uuid.uuid4())


class TestRecovery:
    """Tests for expiring and resuming interrupted attempts."""

    @pytest.mark.asyncio
    async def test_expire_stale_attempts(self, service, db_manager, make_attempt, minutes_ago, mock_storage):
        stale = await make_attempt(
            processing_status=ProcessingStatus.PROCESSING.value,
            processing_step=ProcessingStep.ANALYZING.value,
            ipfs_hash="QmStale",
            audio_file_url=f"{GATEWAY}QmStale"
        )
        fresh = await make_attempt(processing_status=ProcessingStatus.PROCESSING.value)
        completed = await make_attempt(processing_status=ProcessingStatus.COMPLETED.value)
        await db_manager.attempts.update_attempt(stale.id, updated_at=minutes_ago(60))
        await db_manager.attempts.update_attempt(completed.id, updated_at=minutes_ago(60))

        expired = await service.expire_stale_attempts(older_than_minutes=30)

        assert expired == [stale.id]
        row = await db_manager.attempts.get_attempt(stale.id)
        assert row.processing_status == ProcessingStatus.FAILED.value
        assert "analyzing" in row.error_message
        assert (await db_manager.attempts.get_attempt(fresh.id)).processing_status == ProcessingStatus.PROCESSING.value
        assert (await db_manager.attempts.get_attempt(completed.id)).processing_status == ProcessingStatus.COMPLETED.value
        mock_storage.unpin_file.assert_awaited_once_with("QmStale")

    @pytest.mark.asyncio
    async def test_expire_without_upload_skips_unpin(self, service, db_manager, make_attempt, minutes_ago, mock_storage):
        stale = await make_attempt(
            processing_status=ProcessingStatus.PROCESSING.value,
            processing_step=ProcessingStep.UPLOADING.value
        )
        await db_manager.attempts.update_attempt(stale.id, updated_at=minutes_ago(60))

        expired = await service.expire_stale_attempts(older_than_minutes=30)

        assert expired == [stale.id]
        mock_storage.unpin_file.assert_not_called()

    @pytest.mark.asyncio
    async def test_expire_rejects_non_positive_cutoff(self, service):
        with pytest.raises(InvalidAttemptError):
            await service.expire_stale_attempts(older_than_minutes=0)

    @pytest.mark.asyncio
    async def test_resume_uploaded_attempt(self, service, db_manager, make_user, make_attempt, minutes_ago, mock_storage, mock_analyzer):
        user = await make_user()
        attempt = await make_attempt(
            user_id=user.id,
            processing_status=ProcessingStatus.PROCESSING.value,
            processing_step=ProcessingStep.UPLOADED.value,
            ipfs_hash="QmResume",
            audio_file_url=f"{GATEWAY}QmResume",
            overall_score=0
        )
        await db_manager.attempts.update_attempt(attempt.id, updated_at=minutes_ago(60))

        response = await service.resume_attempt(attempt.id)

        assert response.processingStatus == "completed"
        assert response.overallScore == 85.0
        mock_storage.upload_audio.assert_not_called()
        mock_analyzer.analyze_pronunciation.assert_awaited_once_with(f"{GATEWAY}QmResume", "你好", "HSK2")
        assert (await db_manager.users.get_user_by_id(user.id)).total_attempts == 1

    @pytest.mark.asyncio
    async def test_resume_completed_attempt_rejected(self, service, make_attempt):
        attempt = await make_attempt(processing_status=ProcessingStatus.COMPLETED.value)

        with pytest.raises(InvalidAttemptError):
            await service.resume_attempt(attempt.id)

    @pytest.mark.asyncio
    async def test_resume_before_upload_rejected(self, service, make_attempt):
        attempt = await make_attempt(
            processing_status=ProcessingStatus.PROCESSING.value,
            processing_step=ProcessingStep.UPLOADING.value
        )

        with pytest.raises(InvalidAttemptError):
            await service.resume_attempt(attempt.id)

    @pytest.mark.asyncio
    async def test_resume_missing_attempt(self, service):
        with pytest.raises(AttemptNotFoundError):
            await service.resume_attempt(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_resume_failure_unpins(self, service, db_manager, make_attempt, minutes_ago, mock_storage, mock_analyzer):
        attempt = await make_attempt(
            processing_status=ProcessingStatus.PROCESSING.value,
            processing_step=ProcessingStep.ANALYZING.value,
            ipfs_hash="QmResume",
            audio_file_url=f"{GATEWAY}QmResume"
        )
        await db_manager.attempts.update_attempt(attempt.id, updated_at=minutes_ago(60))
        mock_analyzer.analyze_pronunciation.side_effect = RuntimeError("still down")

        with pytest.raises(AnalysisFailedError):
            await service.resume_attempt(attempt.id)

        row = await db_manager.attempts.get_attempt(attempt.id)
        assert row.processing_status == ProcessingStatus.FAILED.value
        mock_storage.unpin_file.assert_awaited_once_with("QmResume")

    @pytest.mark.asyncio
    async def test_expired_mid_analysis_stays_failed(self, service, db_manager, make_user, make_request, minutes_ago, mock_storage, mock_analyzer, analysis_result):
        user = await make_user()
        expired_ids = []

        async def expire_while_analyzing(audio_url, original_text, user_level):
            attempt_id = uuid.UUID(mock_storage.upload_audio.call_args.kwargs["keyvalues"]["attemptId"])
            await db_manager.attempts.update_attempt(attempt_id, updated_at=minutes_ago(60))
            expired_ids.extend(await service.expire_stale_attempts(older_than_minutes=30))
            return analysis_result

        mock_analyzer.analyze_pronunciation.side_effect = expire_while_analyzing

        with pytest.raises(AttemptSupersededError) as exc_info:
            await service.analyze_pronunciation(make_request(user_id=user.id))

        assert expired_ids == [exc_info.value.attempt_id]
        row = await db_manager.attempts.get_attempt(exc_info.value.attempt_id)
        assert row.processing_status == ProcessingStatus.FAILED.value
        assert row.error_message == "Attempt expired while in step analyzing"
        assert row.overall_score == 0
        mock_storage.unpin_file.assert_awaited_once_with("QmHash")
        assert (await db_manager.users.get_user_by_id(user.id)).total_attempts == 0

    @pytest.mark.asyncio
    async def test_resume_of_live_attempt_rejected(self, service, db_manager, make_user, make_request, mock_storage, mock_analyzer, analysis_result):
        user = await make_user()
        resume_errors = []

        async def resume_while_analyzing(audio_url, original_text, user_level):
            attempt_id = uuid.UUID(mock_storage.upload_audio.call_args.kwargs["keyvalues"]["attemptId"])
            try:
                await service.resume_attempt(attempt_id)
            except PronunciationError as e:
                resume_errors.append(e)
            return analysis_result

        mock_analyzer.analyze_pronunciation.side_effect = resume_while_analyzing

        response = await service.analyze_pronunciation(make_request(user_id=user.id))

        assert response.processingStatus == "completed"
        assert len(resume_errors) == 1
        assert isinstance(resume_errors[0], InvalidAttemptError)
        assert mock_analyzer.analyze_pronunciation.await_count == 1
        refreshed = await db_manager.users.get_user_by_id(user.id)
        assert refreshed.total_attempts == 1
        assert refreshed.average_score == 85.0

    @pytest.mark.asyncio
    async def test_second_resume_cannot_claim(self, service, db_manager, make_attempt, minutes_ago, mock_analyzer, analysis_result):
        attempt = await make_attempt(
            processing_status=ProcessingStatus.PROCESSING.value,
            processing_step=ProcessingStep.ANALYZING.value,
            ipfs_hash="QmResume",
            audio_file_url=f"{GATEWAY}QmResume"
        )
        await db_manager.attempts.update_attempt(attempt.id, updated_at=minutes_ago(60))
        second_resume_errors = []

        async def resume_again(audio_url, original_text, user_level):
            try:
                await service.resume_attempt(attempt.id)
            except PronunciationError as e:
                second_resume_errors.append(e)
            return analysis_result

        mock_analyzer.analyze_pronunciation.side_effect = resume_again

        response = await service.resume_attempt(attempt.id)

        assert response.processingStatus == "completed"
        assert [type(e) for e in second_resume_errors] == [InvalidAttemptError]
        assert mock_analyzer.analyze_pronunciation.await_count == 1

    @pytest.mark.asyncio
    async def test_resume_loses_to_finished_run(self, service, db_manager, make_user, make_attempt, minutes_ago, mock_storage, mock_analyzer, analysis_result):
        user = await make_user()
        attempt = await make_attempt(
            user_id=user.id,
            processing_status=ProcessingStatus.PROCESSING.value,
            processing_step=ProcessingStep.ANALYZING.value,
            ipfs_hash="QmResume",
            audio_file_url=f"{GATEWAY}QmResume",
            overall_score=0
        )
        await db_manager.attempts.update_attempt(attempt.id, updated_at=minutes_ago(60))

        async def original_run_finishes(audio_url, original_text, user_level):
            await db_manager.attempts.update_attempt(
                attempt.id,
                processing_status=ProcessingStatus.COMPLETED.value,
                overall_score=90
            )
            return analysis_result

        mock_analyzer.analyze_pronunciation.side_effect = original_run_finishes

        with pytest.raises(AttemptSupersededError):
            await service.resume_attempt(attempt.id)

        row = await db_manager.attempts.get_attempt(attempt.id)
        assert row.processing_status == ProcessingStatus.COMPLETED.value
        assert row.overall_score == 90.0
        assert row.error_message is None
        mock_storage.unpin_file.assert_not_called()
        assert (await db_manager.users.get_user_by_id(user.id)).total_attempts == 0

    @pytest.mark.asyncio
    async def test_resume_recently_updated_rejected(self, service, db_manager, make_attempt, mock_analyzer):
        attempt = await make_attempt(
            processing_status=ProcessingStatus.PROCESSING.value,
            processing_step=ProcessingStep.UPLOADED.value,
            ipfs_hash="QmResume",
            audio_file_url=f"{GATEWAY}QmResume"
        )

        with pytest.raises(InvalidAttemptError, match="may still be running"):
            await service.resume_attempt(attempt.id, older_than_minutes=30)

        mock_analyzer.analyze_pronunciation.assert_not_called()
        row = await db_manager.attempts.get_attempt(attempt.id)
        assert row.processing_status == ProcessingStatus.PROCESSING.value
