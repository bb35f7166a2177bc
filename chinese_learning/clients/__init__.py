"""Client modules for the database and external service integrations."""

from chinese_learning.clients.database import (
    DatabaseConfigError,
    DatabaseManager,
    PronunciationAttemptRepository,
    UserRepository,
    create_db_engine
)

from chinese_learning.clients.pinata_client import (
    PinataClient,
    PinataConfigError,
    PinataUploadError,
    get_pinata_client
)

from chinese_learning.clients.gemini_client import (
    GeminiClient,
    GeminiConfigError,
    GeminiError,
    get_gemini_client,
    parse_analysis_result
)

from chinese_learning.clients.elevenlabs_client import (
    ElevenLabsClient,
    ElevenLabsConfigError,
    SpeechSynthesisError,
    get_elevenlabs_client
)

__all__ = [
    "DatabaseConfigError",
    "DatabaseManager",
    "PronunciationAttemptRepository",
    "UserRepository",
    "create_db_engine",
    "PinataClient",
    "PinataConfigError",
    "PinataUploadError",
    "get_pinata_client",
    "GeminiClient",
    "GeminiConfigError",
    "GeminiError",
    "get_gemini_client",
    "parse_analysis_result",
    "ElevenLabsClient",
    "ElevenLabsConfigError",
    "SpeechSynthesisError",
    "get_elevenlabs_client"
]
