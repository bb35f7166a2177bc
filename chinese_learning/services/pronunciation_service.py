"""
Pronunciation analysis service.

This module provides the core business logic for:
- Recording a pronunciation attempt, pinning its audio to IPFS and scoring it with Gemini
- Keeping each learner's running statistics in step with completed attempts
- Querying attempts and statistics
- Expiring or resuming attempts interrupted mid-workflow

Every workflow step is persisted on the attempt row (``processing_step``) so
an interrupted attempt can be told apart from a live one. When a step fails
after the audio is pinned, the pin is removed again before the error is
re-raised; the row keeps the URL and hash for inspection.
"""

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Tuple
from uuid import UUID

from chinese_learning.clients.database import DatabaseManager
from chinese_learning.clients.gemini_client import get_gemini_client
from chinese_learning.clients.pinata_client import get_pinata_client
from chinese_learning.config import settings
from chinese_learning.models.api_models import (
    PaginatedAttemptsResponse,
    PronunciationAnalysisResponse,
    UserStatisticsResponse
)
from chinese_learning.models.db_models import (
    RESUMABLE_STEPS,
    ProcessingStatus,
    ProcessingStep,
    PronunciationAttempt,
    empty_analysis_result
)
from chinese_learning.models.internal_models import (
    AnalysisResult,
    AudioMetadata,
    CreatePronunciationAttemptRequest,
    UploadResult
)
from chinese_learning.services.statistics import STATISTICS_WINDOW, summarize_recent_scores

logger = logging.getLogger(__name__)

DEFAULT_USER_LEVEL = "Beginner"

Compensation = Tuple[str, Callable[[], Awaitable[None]]]


class PronunciationError(Exception):
    """Base exception for pronunciation service errors."""

    def __init__(
        self,
        message: str,
        attempt_id: Optional[UUID] = None,
        cause: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.message = message
        self.attempt_id = attempt_id
        self.cause = cause


class InvalidAttemptError(PronunciationError):
    """Raised when a request is rejected before any work is done."""
    pass


class UploadFailedError(PronunciationError):
    """Raised when the audio could not be pinned to IPFS."""
    pass


class AnalysisFailedError(PronunciationError):
    """Raised when the AI analysis call fails."""
    pass


class PersistenceFailedError(PronunciationError):
    """Raised when reading or writing the attempt row fails."""
    pass


class AttemptSupersededError(PersistenceFailedError):
    """Raised when another writer expired or finished the attempt first."""
    pass


class StatsUpdateFailedError(PronunciationError):
    """Raised when the learner's running statistics could not be updated."""
    pass


class AttemptNotFoundError(PronunciationError):
    """Raised when a pronunciation attempt does not exist."""
    pass


class UserNotFoundError(PronunciationError):
    """Raised when a user does not exist."""
    pass


class PronunciationService:
    """
    Orchestrates the pronunciation analysis workflow.

    Storage and analyzer are injected so tests can substitute fakes; they
    default to the process-wide Pinata and Gemini clients.
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        storage=None,
        analyzer=None,
        unpin_on_failure: Optional[bool] = None
    ):
        """
        Initialize pronunciation service.

        Args:
            db_manager: Database manager instance. If None, creates a new one.
            storage: Object store with upload_audio/get_public_url/unpin_file
            analyzer: Scorer with analyze_pronunciation
            unpin_on_failure: Remove pins of failed attempts (default from settings)
        """
        self.db = db_manager or DatabaseManager()
        self.storage = storage or get_pinata_client()
        self.analyzer = analyzer or get_gemini_client()
        self.unpin_on_failure = (
            settings.unpin_on_failure if unpin_on_failure is None else unpin_on_failure
        )

        logger.info(f"Pronunciation service initialized (unpin_on_failure={self.unpin_on_failure})")

    async def analyze_pronunciation(
        self,
        request: CreatePronunciationAttemptRequest
    ) -> PronunciationAnalysisResponse:
        """
        Run the full analysis workflow for one recording.

        Workflow:
        1. Create the attempt row (pending)
        2. Mark it processing
        3. Pin the audio to IPFS
        4. Store the IPFS hash and public URL
        5. Score the recording with Gemini at the learner's level
        6. Store the result and mark the attempt completed
        7. Fold the score into the learner's statistics (if a user was given)

        Args:
            request: Text, audio bytes, audio metadata and optional user ID

        Returns:
            PronunciationAnalysisResponse for the completed attempt

        Raises:
            InvalidAttemptError: If the text or audio is empty
            UploadFailedError: If pinning the audio fails
            AnalysisFailedError: If the AI call fails
            PersistenceFailedError: If a database read or write fails
            StatsUpdateFailedError: If the statistics update fails
        """
        self._validate_request(request)
        logger.info(f'Starting pronunciation analysis for text: "{request.original_text}"')

        # Step 1: Create initial attempt record
        attempt = await self._create_initial_attempt(request)
        attempt_id = attempt.id
        compensations: List[Compensation] = []

        try:
            # Step 2: Mark as processing
            await self._advance(
                attempt_id,
                "mark attempt as processing",
                expected_status=ProcessingStatus.PENDING.value,
                processing_status=ProcessingStatus.PROCESSING.value,
                processing_step=ProcessingStep.UPLOADING.value
            )

            # Step 3: Upload audio to IPFS
            upload = await self._upload_audio(request.audio_buffer, request.audio_metadata, attempt_id)
            compensations.append(
                ("unpin uploaded audio", self._unpin_compensation(attempt_id, upload.ipfs_hash))
            )

            # Step 4: Store upload location
            audio_url = await self._update_attempt_with_upload(attempt_id, upload)

            # Steps 5-7: Analyze, finalize, update statistics
            final_attempt = await self._complete_from_upload(
                attempt_id,
                audio_url,
                request.original_text,
                request.user_id
            )

        except Exception as e:
            raise await self._fail_attempt(attempt_id, e, compensations)

        logger.info(f"Pronunciation analysis completed successfully for attempt: {attempt_id}")
        return self._map_to_response(final_attempt)

    async def get_pronunciation_attempt(self, attempt_id: UUID) -> PronunciationAnalysisResponse:
        """
        Get a single attempt.

        Raises:
            AttemptNotFoundError: If the attempt does not exist
        """
        attempt = await self._load_attempt(attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(
                f"Pronunciation attempt with ID {attempt_id} not found",
                attempt_id=attempt_id
            )
        return self._map_to_response(attempt)

    async def get_user_pronunciation_attempts(
        self,
        user_id: UUID,
        page: int = 1,
        limit: int = 10
    ) -> PaginatedAttemptsResponse:
        """
        Get one page of a user's attempts, newest first.

        Raises:
            InvalidAttemptError: If page or limit is below 1
            PersistenceFailedError: If the query fails
        """
        if page < 1 or limit < 1:
            raise InvalidAttemptError(f"page and limit must be at least 1 (got page={page}, limit={limit})")

        try:
            attempts, total = await self.db.attempts.list_user_attempts(user_id, page, limit)
        except Exception as e:
            logger.error(f"Failed to list attempts for user {user_id}: {e}")
            raise PersistenceFailedError(f"Failed to list pronunciation attempts: {e}", cause=e)

        return PaginatedAttemptsResponse(
            attempts=[self._map_to_response(attempt) for attempt in attempts],
            total=total,
            totalPages=math.ceil(total / limit)
        )

    async def get_user_statistics(self, user_id: UUID) -> UserStatisticsResponse:
        """
        Summarize a user's progress.

        Best score and recent improvement are computed over the user's last
        completed attempts.

        Raises:
            UserNotFoundError: If the user does not exist
            PersistenceFailedError: If a query fails
        """
        try:
            user = await self.db.users.get_user_by_id(user_id)
            if user is None:
                raise UserNotFoundError(f"User with ID {user_id} not found")

            scores = await self.db.attempts.recent_completed_scores(user_id, STATISTICS_WINDOW)

        except PronunciationError:
            raise
        except Exception as e:
            logger.error(f"Failed to load statistics for user {user_id}: {e}")
            raise PersistenceFailedError(f"Failed to load user statistics: {e}", cause=e)

        best_score, recent_improvement = summarize_recent_scores(scores)

        return UserStatisticsResponse(
            totalAttempts=user.total_attempts or 0,
            averageScore=float(user.average_score or 0),
            bestScore=best_score,
            recentImprovement=recent_improvement
        )

    async def expire_stale_attempts(self, older_than_minutes: Optional[int] = None) -> List[UUID]:
        """
        Fail attempts stuck in processing and release their pins.

        Only rows still in processing at update time are expired, so an
        attempt that completes concurrently keeps its result.

        Args:
            older_than_minutes: Age of the last update (default from settings)

        Returns:
            IDs of the expired attempts
        """
        minutes = settings.stale_attempt_minutes if older_than_minutes is None else older_than_minutes
        if minutes < 1:
            raise InvalidAttemptError(f"older_than_minutes must be at least 1 (got {minutes})")

        cutoff = datetime.utcnow() - timedelta(minutes=minutes)

        try:
            stale_attempts = await self.db.attempts.find_stale_processing(cutoff)
        except Exception as e:
            logger.error(f"Failed to find stale attempts: {e}")
            raise PersistenceFailedError(f"Failed to find stale attempts: {e}", cause=e)

        expired: List[UUID] = []
        for attempt in stale_attempts:
            updated = await self._persist(
                attempt.id,
                "expire attempt",
                expected_status=ProcessingStatus.PROCESSING.value,
                processing_status=ProcessingStatus.FAILED.value,
                error_message=f"Attempt expired while in step {attempt.processing_step}"
            )
            if not updated:
                continue

            if attempt.ipfs_hash:
                await self._unpin_compensation(attempt.id, attempt.ipfs_hash)()
            expired.append(attempt.id)

        logger.info(f"Expired {len(expired)} stale pronunciation attempts (cutoff: {cutoff.isoformat()})")
        return expired

    async def resume_attempt(
        self,
        attempt_id: UUID,
        older_than_minutes: Optional[int] = None
    ) -> PronunciationAnalysisResponse:
        """
        Continue an interrupted attempt from its stored upload.

        Only attempts still in processing whose audio is already pinned and
        whose row has not been written for ``older_than_minutes`` can be
        resumed. The row is claimed with a guarded write first, so a live run
        or a second resume cannot pick it up too; analysis and the statistics
        update are then re-run.

        Args:
            attempt_id: Attempt to resume
            older_than_minutes: Required age of the last update (default from settings)

        Raises:
            AttemptNotFoundError: If the attempt does not exist
            InvalidAttemptError: If the attempt is not resumable or was updated recently
            AttemptSupersededError: If another run finished or expired it meanwhile
        """
        minutes = settings.stale_attempt_minutes if older_than_minutes is None else older_than_minutes
        if minutes < 1:
            raise InvalidAttemptError(f"older_than_minutes must be at least 1 (got {minutes})")

        attempt = await self._load_attempt(attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(
                f"Pronunciation attempt with ID {attempt_id} not found",
                attempt_id=attempt_id
            )

        if attempt.processing_status != ProcessingStatus.PROCESSING.value:
            raise InvalidAttemptError(
                f"Attempt {attempt_id} is {attempt.processing_status} and cannot be resumed",
                attempt_id=attempt_id
            )
        if attempt.processing_step not in RESUMABLE_STEPS or not attempt.audio_file_url:
            raise InvalidAttemptError(
                f"Attempt {attempt_id} stopped at step {attempt.processing_step} before its audio was stored",
                attempt_id=attempt_id
            )

        cutoff = datetime.utcnow() - timedelta(minutes=minutes)
        claimed = await self._persist(
            attempt_id,
            "claim attempt for resume",
            expected_status=ProcessingStatus.PROCESSING.value,
            updated_before=cutoff,
            processing_step=attempt.processing_step
        )
        if not claimed:
            raise InvalidAttemptError(
                f"Attempt {attempt_id} was updated within the last {minutes} minutes and may still be running",
                attempt_id=attempt_id
            )

        logger.info(f"Resuming attempt {attempt_id} from step {attempt.processing_step}")

        compensations: List[Compensation] = []
        if attempt.ipfs_hash:
            compensations.append(
                ("unpin uploaded audio", self._unpin_compensation(attempt_id, attempt.ipfs_hash))
            )

        try:
            final_attempt = await self._complete_from_upload(
                attempt_id,
                attempt.audio_file_url,
                attempt.original_text,
                attempt.user_id
            )
        except Exception as e:
            raise await self._fail_attempt(attempt_id, e, compensations)

        logger.info(f"Resumed attempt {attempt_id} completed")
        return self._map_to_response(final_attempt)

    def _validate_request(self, request: CreatePronunciationAttemptRequest) -> None:
        if not request.original_text or not request.original_text.strip():
            raise InvalidAttemptError("Original text is required")
        if not request.audio_buffer:
            raise InvalidAttemptError("Audio recording is empty")

    async def _create_initial_attempt(self, request: CreatePronunciationAttemptRequest) -> PronunciationAttempt:
        attempt = PronunciationAttempt(
            id=uuid.uuid4(),
            user_id=request.user_id,
            original_text=request.original_text,
            audio_file_url="",
            ipfs_hash="",
            analysis_result=empty_analysis_result(),
            audio_metadata=request.audio_metadata.model_dump(),
            overall_score=0,
            processing_status=ProcessingStatus.PENDING.value,
            processing_step=ProcessingStep.CREATED.value
        )

        try:
            created = await self.db.attempts.create_attempt(attempt)
        except Exception as e:
            logger.error(f"Failed to create pronunciation attempt: {e}")
            raise PersistenceFailedError(f"Failed to create pronunciation attempt: {e}", cause=e)

        logger.info(f"Created pronunciation attempt: {created.id}")
        return created

    async def _persist(
        self,
        attempt_id: UUID,
        action: str,
        expected_status: Optional[str] = None,
        updated_before: Optional[datetime] = None,
        **fields
    ) -> int:
        """Write columns of the attempt row, mapping failures to PersistenceFailedError."""
        try:
            return await self.db.attempts.update_attempt(
                attempt_id,
                expected_status=expected_status,
                updated_before=updated_before,
                **fields
            )
        except Exception as e:
            logger.error(f"Failed to {action} for attempt {attempt_id}: {e}")
            raise PersistenceFailedError(f"Failed to {action}: {e}", attempt_id=attempt_id, cause=e)

    async def _advance(
        self,
        attempt_id: UUID,
        action: str,
        expected_status: str = ProcessingStatus.PROCESSING.value,
        **fields
    ) -> None:
        """Write a workflow step only while the row is still in ``expected_status``."""
        if not await self._persist(attempt_id, action, expected_status=expected_status, **fields):
            raise AttemptSupersededError(
                f"Failed to {action}: attempt is no longer {expected_status}",
                attempt_id=attempt_id
            )

    async def _load_attempt(self, attempt_id: UUID) -> Optional[PronunciationAttempt]:
        try:
            return await self.db.attempts.get_attempt(attempt_id)
        except Exception as e:
            logger.error(f"Failed to load attempt {attempt_id}: {e}")
            raise PersistenceFailedError(
                f"Failed to load pronunciation attempt: {e}",
                attempt_id=attempt_id,
                cause=e
            )

    async def _upload_audio(
        self,
        audio_buffer: bytes,
        metadata: AudioMetadata,
        attempt_id: UUID
    ) -> UploadResult:
        try:
            upload = await self.storage.upload_audio(
                audio_buffer,
                metadata,
                name=f"Pronunciation Analysis {attempt_id}",
                keyvalues={
                    "attemptId": str(attempt_id),
                    "originalDuration": str(metadata.duration),
                    "analysisType": "pronunciation",
                }
            )
        except Exception as e:
            logger.error(f"Audio upload failed for attempt {attempt_id}: {e}")
            raise UploadFailedError(f"Failed to upload audio file: {e}", attempt_id=attempt_id, cause=e)

        logger.info(f"Audio uploaded to IPFS: {upload.ipfs_hash}")
        return upload

    async def _update_attempt_with_upload(self, attempt_id: UUID, upload: UploadResult) -> str:
        audio_url = self.storage.get_public_url(upload.ipfs_hash)
        await self._advance(
            attempt_id,
            "store upload location",
            ipfs_hash=upload.ipfs_hash,
            audio_file_url=audio_url,
            processing_step=ProcessingStep.UPLOADED.value
        )
        logger.info(f"Updated attempt {attempt_id} with IPFS data: {upload.ipfs_hash}")
        return audio_url

    async def _complete_from_upload(
        self,
        attempt_id: UUID,
        audio_url: str,
        original_text: str,
        user_id: Optional[UUID]
    ) -> PronunciationAttempt:
        """Steps 5-7: analyze, finalize and update statistics."""
        user_level = await self._resolve_user_level(attempt_id, user_id)
        await self._advance(
            attempt_id,
            "record analysis step",
            processing_step=ProcessingStep.ANALYZING.value
        )

        # Step 5: Perform AI analysis
        analysis_result = await self._perform_ai_analysis(attempt_id, audio_url, original_text, user_level)

        # Step 6: Finalize attempt
        final_attempt = await self._finalize_analysis(attempt_id, analysis_result)

        # Step 7: Update user statistics
        if user_id and await self._update_user_statistics(attempt_id, user_id, analysis_result.overallScore):
            await self._persist(
                attempt_id,
                "record statistics step",
                expected_status=ProcessingStatus.COMPLETED.value,
                processing_step=ProcessingStep.STATS_UPDATED.value
            )
            final_attempt.processing_step = ProcessingStep.STATS_UPDATED.value

        return final_attempt

    async def _resolve_user_level(self, attempt_id: UUID, user_id: Optional[UUID]) -> str:
        if not user_id:
            return DEFAULT_USER_LEVEL

        try:
            user = await self.db.users.get_user_by_id(user_id)
        except Exception as e:
            logger.error(f"Failed to look up user {user_id}: {e}")
            raise PersistenceFailedError(f"Failed to look up user: {e}", attempt_id=attempt_id, cause=e)

        if user is None or user.level is None:
            return DEFAULT_USER_LEVEL
        return getattr(user.level, "value", user.level)

    async def _perform_ai_analysis(
        self,
        attempt_id: UUID,
        audio_url: str,
        original_text: str,
        user_level: str
    ) -> AnalysisResult:
        try:
            analysis_result = await self.analyzer.analyze_pronunciation(audio_url, original_text, user_level)
        except Exception as e:
            logger.error(f"AI analysis failed for attempt {attempt_id}: {e}")
            raise AnalysisFailedError(f"AI analysis failed: {e}", attempt_id=attempt_id, cause=e)

        if analysis_result.usedFallback:
            logger.warning(f"Attempt {attempt_id} scored with fallback result")
        logger.info(f"AI analysis completed with score: {analysis_result.overallScore}")
        return analysis_result

    async def _finalize_analysis(self, attempt_id: UUID, analysis_result: AnalysisResult) -> PronunciationAttempt:
        # Only one run can move the row from processing to completed
        await self._advance(
            attempt_id,
            "save analysis result",
            analysis_result=analysis_result.model_dump(),
            overall_score=analysis_result.overallScore,
            processing_status=ProcessingStatus.COMPLETED.value,
            processing_step=ProcessingStep.ANALYZED.value
        )

        final_attempt = await self._load_attempt(attempt_id)
        if final_attempt is None:
            raise PersistenceFailedError(
                f"Failed to retrieve finalized attempt: {attempt_id}",
                attempt_id=attempt_id
            )
        return final_attempt

    async def _update_user_statistics(self, attempt_id: UUID, user_id: UUID, new_score: float) -> bool:
        """Returns False if the user no longer exists."""
        try:
            user = await self.db.users.update_statistics(user_id, new_score)
        except Exception as e:
            logger.error(f"Failed to update statistics for user {user_id}: {e}")
            raise StatsUpdateFailedError(
                f"Failed to update user statistics: {e}",
                attempt_id=attempt_id,
                cause=e
            )

        if user is None:
            logger.warning(f"User {user_id} not found, statistics not updated for attempt {attempt_id}")
            return False
        return True

    def _unpin_compensation(self, attempt_id: UUID, ipfs_hash: str) -> Callable[[], Awaitable[None]]:
        async def compensate() -> None:
            if not self.unpin_on_failure:
                logger.info(f"Keeping pin {ipfs_hash} of failed attempt {attempt_id}")
                return

            if await self.storage.unpin_file(ipfs_hash):
                logger.info(f"Unpinned {ipfs_hash} of failed attempt {attempt_id}")
            else:
                logger.warning(f"Could not unpin {ipfs_hash} of failed attempt {attempt_id}; pin is orphaned")

        return compensate

    async def _settled_elsewhere(self, attempt_id: UUID) -> bool:
        """True if the row was moved on by another writer that recorded its pin."""
        try:
            attempt = await self.db.attempts.get_attempt(attempt_id)
        except Exception as e:
            logger.error(f"Failed to reload attempt {attempt_id} after a lost update: {e}")
            return False

        if attempt is None or not attempt.ipfs_hash:
            return False

        logger.warning(
            f"Attempt {attempt_id} is already {attempt.processing_status}; "
            f"leaving pin {attempt.ipfs_hash} to that outcome"
        )
        return True

    async def _fail_attempt(
        self,
        attempt_id: UUID,
        error: Exception,
        compensations: List[Compensation]
    ) -> PronunciationError:
        """
        Mark the attempt failed and run compensations in reverse order.

        The failed status is only written over the status this run owns
        (pending/processing, or completed for a statistics failure). If
        another writer already expired or finished the row and recorded the
        pin, the row and the pin are left to that outcome.

        Returns the error to re-raise; unexpected exceptions are wrapped in
        PronunciationError with the attempt ID attached.
        """
        if isinstance(error, PronunciationError):
            failure = error
            if failure.attempt_id is None:
                failure.attempt_id = attempt_id
        else:
            failure = PronunciationError(str(error) or type(error).__name__, attempt_id=attempt_id, cause=error)
            failure.__cause__ = error

        logger.error(f"Pronunciation analysis failed for attempt {attempt_id}: {failure}")

        if isinstance(failure, StatsUpdateFailedError):
            owned_statuses = [ProcessingStatus.COMPLETED.value]
        else:
            owned_statuses = [ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value]

        try:
            marked = await self.db.attempts.update_attempt(
                attempt_id,
                expected_status=owned_statuses,
                processing_status=ProcessingStatus.FAILED.value,
                error_message=str(failure)
            )
        except Exception as mark_error:
            logger.error(f"Failed to mark attempt {attempt_id} as failed: {mark_error}")
            marked = None

        if marked:
            logger.info(f"Updated attempt {attempt_id} status to: failed")
        elif marked == 0 and await self._settled_elsewhere(attempt_id):
            return failure

        for description, compensate in reversed(compensations):
            try:
                await compensate()
            except Exception as compensation_error:
                logger.error(f"Compensation '{description}' failed for attempt {attempt_id}: {compensation_error}")

        return failure

    def _map_to_response(self, attempt: PronunciationAttempt) -> PronunciationAnalysisResponse:
        return PronunciationAnalysisResponse(
            id=attempt.id,
            originalText=attempt.original_text,
            audioFileUrl=attempt.audio_file_url or "",
            analysisResult=AnalysisResult.model_validate(attempt.analysis_result or empty_analysis_result()),
            overallScore=float(attempt.overall_score or 0),
            processingStatus=attempt.processing_status,
            createdAt=attempt.created_at
        )


# Global service instance
_pronunciation_service: Optional[PronunciationService] = None


def get_pronunciation_service() -> PronunciationService:
    """
    Get the global pronunciation service instance.

    Returns:
        PronunciationService: The global service instance
    """
    global _pronunciation_service
    if _pronunciation_service is None:
        _pronunciation_service = PronunciationService()
    return _pronunciation_service
