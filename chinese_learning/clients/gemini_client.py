"""
Gemini client for pronunciation scoring and conversation practice.

The model is asked to answer with a JSON object. Replies are parsed
leniently: the first ``{`` to the last ``}`` is validated against
``AnalysisResult``, and anything unparseable becomes a fixed fallback
result flagged with ``usedFallback=True`` instead of an error.
"""

import json
import logging
import re
import time
from typing import Optional

import google.generativeai as genai
from pydantic import ValidationError

from ..config import settings
from ..models.internal_models import AnalysisResult

logger = logging.getLogger(__name__)

JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")

DEFAULT_FEEDBACK = "Không có phản hồi chi tiết."
FALLBACK_FEEDBACK_LENGTH = 500

ANALYSIS_GENERATION_CONFIG = {
    "temperature": 0.3,
    "top_k": 1,
    "top_p": 1,
    "max_output_tokens": 2048,
}

CHAT_GENERATION_CONFIG = {
    "temperature": 0.7,
    "top_k": 40,
    "top_p": 0.95,
    "max_output_tokens": 1024,
}

SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]

PRONUNCIATION_PROMPT = """You are a professional Chinese pronunciation teacher. Analyze the pronunciation of this Chinese text and provide detailed feedback.

**Original Text (Chinese):** {original_text}
**Audio URL:** {audio_url}
**Student Level:** {user_level}

Please provide your analysis in the following JSON format:
{{
    "overallScore": <number between 0-100>,
    "toneAccuracy": <number between 0-100>,
    "pronunciationErrors": [<array of specific errors found>],
    "suggestions": [<array of improvement suggestions>],
    "detailedFeedback": "<detailed explanation in Vietnamese>"
}}

Focus on:
1. Tone accuracy (声调) - This is crucial for Chinese
2. Initials and finals (声母/韵母)
3. Rhythm and stress patterns
4. Common mistakes Vietnamese speakers make with Chinese

Provide constructive feedback in Vietnamese that helps the student improve."""

CHAT_PROMPT = """You are a friendly Chinese conversation partner helping a Vietnamese student practice Chinese.
{context_block}
Student says: "{message}"

Respond naturally in Simplified Chinese, keeping the conversation engaging and educational.
If the student makes mistakes, gently correct them and show the right way to say it.
Adjust your language level to match the student's proficiency.

Keep responses conversational and short (2-3 sentences max)."""


class GeminiConfigError(Exception):
    """Raised when the Gemini API key is missing."""
    pass


class GeminiError(Exception):
    """Raised when a Gemini request fails or returns no candidates."""
    pass


def fallback_analysis(raw_text: str) -> AnalysisResult:
    """Fixed result used when the model reply has no usable JSON object."""
    return AnalysisResult(
        overallScore=75,
        toneAccuracy=70,
        pronunciationErrors=["could not parse"],
        suggestions=["retry with clearer audio"],
        detailedFeedback=(raw_text or "")[:FALLBACK_FEEDBACK_LENGTH],
        usedFallback=True
    )


def parse_analysis_result(analysis_text: str) -> AnalysisResult:
    """
    Parse a Gemini reply into an AnalysisResult. Never raises.

    Args:
        analysis_text: Free-text model reply expected to contain a JSON object

    Returns:
        Validated AnalysisResult, or the fallback result if parsing fails
    """
    match = JSON_OBJECT_PATTERN.search(analysis_text or "")
    if match:
        try:
            parsed = json.loads(match.group(0))
            if not isinstance(parsed, dict):
                raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")

            parsed.pop("usedFallback", None)
            if not parsed.get("detailedFeedback"):
                parsed["detailedFeedback"] = DEFAULT_FEEDBACK

            return AnalysisResult.model_validate(parsed)

        except (ValueError, RecursionError, ValidationError) as e:
            logger.warning(f"Failed to parse structured analysis, using fallback: {e}")
    else:
        logger.warning("No JSON object found in Gemini reply, using fallback")

    return fallback_analysis(analysis_text)


class GeminiClient:
    """Client for Google Gemini generative models."""

    def __init__(
        self,
        api_key: str,
        model_name: str = "gemini-2.0-flash",
        timeout: float = 60.0,
        health_ttl: float = 300.0
    ):
        """
        Initialize Gemini client.

        Args:
            api_key: Gemini API key
            model_name: Generative model name
            timeout: Request timeout in seconds (default: 60.0)
            health_ttl: Seconds a successful connection test is reused (default: 300.0)

        Raises:
            GeminiConfigError: If the API key is missing
        """
        if not api_key:
            raise GeminiConfigError("GEMINI_API_KEY is required but not provided")

        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.timeout = timeout
        self.health_ttl = health_ttl
        self._last_healthy_at: Optional[float] = None
        self.model = genai.GenerativeModel(model_name)

        logger.info(f"Gemini client initialized with model: {model_name}")

    @staticmethod
    def build_analysis_prompt(audio_url: str, original_text: str, user_level: Optional[str] = None) -> str:
        return PRONUNCIATION_PROMPT.format(
            original_text=original_text,
            audio_url=audio_url,
            user_level=user_level or "Beginner"
        )

    @staticmethod
    def build_chat_prompt(message: str, context: Optional[str] = None) -> str:
        context_block = f"\nPrevious context: {context}\n" if context else ""
        return CHAT_PROMPT.format(context_block=context_block, message=message)

    async def _generate(self, prompt: str, generation_config: dict, safety_settings=None) -> str:
        """Send a prompt and return the first candidate's text."""
        try:
            response = await self.model.generate_content_async(
                prompt,
                generation_config=generation_config,
                safety_settings=safety_settings,
                request_options={"timeout": self.timeout}
            )
        except Exception as e:
            logger.error(f"Gemini request failed: {e}")
            raise GeminiError(f"Gemini request failed: {e}")

        if not response.candidates:
            raise GeminiError("No analysis result from Gemini")

        parts = response.candidates[0].content.parts
        text = "".join(getattr(part, "text", "") for part in parts)
        if not text:
            raise GeminiError("Empty response from Gemini")
        return text

    async def analyze_pronunciation(
        self,
        audio_url: str,
        original_text: str,
        user_level: str = "Beginner"
    ) -> AnalysisResult:
        """
        Score a pronunciation recording.

        Args:
            audio_url: Public URL of the recording
            original_text: Chinese text the learner was asked to read
            user_level: Learner proficiency used to calibrate feedback

        Returns:
            AnalysisResult (possibly the flagged fallback result)

        Raises:
            GeminiError: If the request fails or Gemini returns no candidates
        """
        logger.info(f'Starting pronunciation analysis for text: "{original_text}"')

        prompt = self.build_analysis_prompt(audio_url, original_text, user_level)
        analysis_text = await self._generate(prompt, ANALYSIS_GENERATION_CONFIG, SAFETY_SETTINGS)

        result = parse_analysis_result(analysis_text)
        logger.info(
            f"Pronunciation analysis finished: overall={result.overallScore}, "
            f"fallback={result.usedFallback}"
        )
        return result

    async def generate_chat_response(self, message: str, context: Optional[str] = None) -> str:
        """
        Reply to a learner's message for conversation practice.

        Raises:
            GeminiError: If the request fails
        """
        logger.info(f'Generating chat response for message: "{message[:50]}..."')
        prompt = self.build_chat_prompt(message, context)
        return await self._generate(prompt, CHAT_GENERATION_CONFIG)

    async def test_connection(self) -> bool:
        """
        Check that Gemini answers a trivial prompt.

        A success is reused for ``health_ttl`` seconds so frequent health
        probes do not each spend a generation; failures are always rechecked.
        """
        now = time.monotonic()
        if self._last_healthy_at is not None and now - self._last_healthy_at < self.health_ttl:
            return True

        try:
            await self._generate('Hello, please respond with "Connection successful"', {"max_output_tokens": 16})
            logger.info("Gemini connection test successful")
            self._last_healthy_at = now
            return True
        except Exception as e:
            logger.error(f"Gemini connection test failed: {e}")
            return False


# Global client instance
_gemini_client: Optional[GeminiClient] = None


def get_gemini_client() -> GeminiClient:
    """
    Get the global Gemini client, built from process settings.

    Returns:
        GeminiClient: The global Gemini client instance
    """
    global _gemini_client
    if _gemini_client is None:
        _gemini_client = GeminiClient(
            api_key=settings.gemini_api_key,
            model_name=settings.gemini_model,
            timeout=settings.gemini_timeout,
            health_ttl=settings.gemini_health_ttl_seconds
        )
    return _gemini_client
