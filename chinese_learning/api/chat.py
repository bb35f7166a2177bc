"""
Conversation practice endpoint backed by Gemini.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from chinese_learning.api.errors import error_detail
from chinese_learning.clients.gemini_client import GeminiClient, GeminiError, get_gemini_client
from chinese_learning.middleware import get_correlation_id
from chinese_learning.models.api_models import ChatRequest, ChatResponse

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["chat"])


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    http_request: Request,
    client: GeminiClient = Depends(get_gemini_client)
) -> ChatResponse:
    """Reply to the learner in simplified Chinese."""
    logger.info("Chat request received", message_length=len(request.message))

    try:
        reply = await client.generate_chat_response(request.message, request.context)
    except GeminiError as e:
        logger.error("Chat response failed", error=str(e))
        raise HTTPException(
            status_code=502,
            detail=error_detail("GeminiError", str(e), get_correlation_id(http_request))
        )

    return ChatResponse(reply=reply)
