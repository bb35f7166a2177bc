"""ElevenLabs client for text-to-speech synthesis."""

import logging
from typing import Optional

import httpx

from ..config import settings

logger = logging.getLogger(__name__)

VOICE_SETTINGS = {
    "stability": 0.75,
    "similarity_boost": 0.85,
    "use_speaker_boost": True,
}


class ElevenLabsConfigError(Exception):
    """Raised when the ElevenLabs API key is missing."""
    pass


class SpeechSynthesisError(Exception):
    """Raised when ElevenLabs fails to synthesize speech."""
    pass


class ElevenLabsClient:
    """HTTP client for the ElevenLabs text-to-speech API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.elevenlabs.io/v1",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize ElevenLabs client.

        Raises:
            ElevenLabsConfigError: If the API key is missing
        """
        if not api_key:
            raise ElevenLabsConfigError("ELEVENLABS_API_KEY is required but not provided")

        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def generate_speech(self, text: str, voice_id: str, model_id: str) -> bytes:
        """
        Synthesize speech for arbitrary text.

        Args:
            text: Text to speak
            voice_id: ElevenLabs voice identifier
            model_id: ElevenLabs model identifier

        Returns:
            MP3 audio bytes

        Raises:
            SpeechSynthesisError: If the request fails for any reason
        """
        logger.info(f"Generating speech with model [{model_id}] and voice [{voice_id}]...")

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport
            ) as client:
                response = await client.post(
                    f"/text-to-speech/{voice_id}",
                    json={
                        "text": text,
                        "model_id": model_id,
                        "voice_settings": VOICE_SETTINGS,
                    },
                    headers={
                        "xi-api-key": self.api_key,
                        "Content-Type": "application/json",
                        "Accept": "audio/mpeg",
                    }
                )
                response.raise_for_status()

            logger.info(f"Generated {len(response.content)} bytes of speech")
            return response.content

        except httpx.HTTPStatusError as e:
            logger.error(f"Failed to generate speech. Status: {e.response.status_code}, body: {e.response.text[:200]}")
            raise SpeechSynthesisError("Failed to generate speech from ElevenLabs")
        except Exception as e:
            logger.error(f"Failed to generate speech: {e}")
            raise SpeechSynthesisError("Failed to generate speech from ElevenLabs")


# Global client instance
_elevenlabs_client: Optional[ElevenLabsClient] = None


def get_elevenlabs_client() -> ElevenLabsClient:
    """
    Get the global ElevenLabs client, built from process settings.

    Returns:
        ElevenLabsClient: The global ElevenLabs client instance
    """
    global _elevenlabs_client
    if _elevenlabs_client is None:
        _elevenlabs_client = ElevenLabsClient(
            api_key=settings.elevenlabs_api_key,
            base_url=settings.elevenlabs_base_url,
            timeout=settings.elevenlabs_timeout
        )
    return _elevenlabs_client
