"""
Text-to-speech endpoint backed by ElevenLabs.
"""

import time

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response

from chinese_learning.api.errors import error_detail
from chinese_learning.clients.elevenlabs_client import (
    ElevenLabsClient,
    SpeechSynthesisError,
    get_elevenlabs_client
)
from chinese_learning.middleware import get_correlation_id
from chinese_learning.models.api_models import TTSRequest
from chinese_learning.observability import record_tts_metrics

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/tts", tags=["tts"])

VIETNAMESE_MODEL_ID = "eleven_turbo_v2_5"
VIETNAMESE_VOICE_ID = "VkftF4RyfVI5yIYa6wFa"
VIETNAMESE_FILENAME = "vietnamese_speech.mp3"


@router.post(
    "/vietnamese",
    response_class=Response,
    responses={200: {"content": {"audio/mpeg": {}}}}
)
async def vietnamese_tts(
    request: TTSRequest,
    http_request: Request,
    client: ElevenLabsClient = Depends(get_elevenlabs_client)
) -> Response:
    """Synthesize Vietnamese speech and return it as an MP3 attachment."""
    correlation_id = get_correlation_id(http_request)

    if not request.text or not request.text.strip():
        raise HTTPException(
            status_code=400,
            detail=error_detail("ValidationError", "Text is required", correlation_id)
        )

    logger.info(
        "Vietnamese TTS request received",
        text_preview=request.text[:50],
        model_id=VIETNAMESE_MODEL_ID,
        voice_id=VIETNAMESE_VOICE_ID
    )

    start_time = time.time()
    try:
        audio = await client.generate_speech(
            text=request.text,
            voice_id=VIETNAMESE_VOICE_ID,
            model_id=VIETNAMESE_MODEL_ID
        )
    except SpeechSynthesisError as e:
        record_tts_metrics(success=False, processing_time=time.time() - start_time)
        logger.error("Vietnamese TTS failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail=error_detail("SpeechSynthesisError", "TTS generation failed", correlation_id)
        )

    record_tts_metrics(success=True, processing_time=time.time() - start_time)
    return Response(
        content=audio,
        media_type="audio/mpeg",
        headers={"Content-Disposition": f'attachment; filename="{VIETNAMESE_FILENAME}"'}
    )
