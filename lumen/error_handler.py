from dataclasses import dataclass
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)


class AppError(Exception):
    def __init__(self, message: str, status_code: int = 500, user_message: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.user_message = user_message or "An error occurred. Please try again later."
        super().__init__(self.message)


# Provider tier failures. These are converted into fallback attempts by the
# provider chain and only surface once every tier is exhausted.

class ProviderError(AppError):
    def __init__(self, message: str, provider: str = "", status_code: int = 502, user_message: Optional[str] = None):
        self.provider = provider
        super().__init__(message, status_code=status_code, user_message=user_message)


class ConfigurationError(ProviderError):
    def __init__(self, message: str, provider: str = ""):
        super().__init__(
            message,
            provider=provider,
            status_code=401,
            user_message="The voice service is not configured correctly."
        )


class RateLimitError(ProviderError):
    def __init__(self, message: str, provider: str = "", retry_after: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(
            message,
            provider=provider,
            status_code=429,
            user_message="Rate limit exceeded. Please wait a moment and try again."
        )


class QuotaExceededError(ProviderError):
    def __init__(self, message: str, provider: str = ""):
        super().__init__(
            message,
            provider=provider,
            status_code=429,
            user_message="API quota exceeded. Please try again later."
        )


class UnusualActivityError(ProviderError):
    def __init__(self, message: str, provider: str = ""):
        super().__init__(
            message,
            provider=provider,
            status_code=401,
            user_message="The voice service flagged unusual activity on this account."
        )


# Narration failures

class NarrationError(AppError):
    title = "Read Aloud Error"


class CannotNarrateError(NarrationError):
    title = "Cannot Read Aloud"

    def __init__(self, message: str = "This message cannot be read aloud."):
        super().__init__(message, status_code=400, user_message=message)


class MutedError(NarrationError):
    title = "Audio Muted"

    def __init__(self, message: str = "Audio is muted. Unmute to hear responses."):
        super().__init__(message, status_code=409, user_message=message)


class SynthesisUnavailableError(NarrationError):
    title = "Speech Unavailable"

    def __init__(self, message: str = "No text-to-speech provider is available.", errors: Optional[List[Exception]] = None):
        self.errors = errors or []
        super().__init__(
            message,
            status_code=503,
            user_message="Voice playback is unavailable right now. You can keep reading the response."
        )


# Transcription failures

class TranscriptionError(AppError):
    pass


class NoSpeechDetectedError(TranscriptionError):
    def __init__(self, message: str = "No speech detected"):
        super().__init__(
            message,
            status_code=422,
            user_message="No speech detected. Please try speaking again."
        )


class TranscriptionTimeoutError(TranscriptionError):
    def __init__(self, message: str = "Transcription timeout - please try again"):
        super().__init__(
            message,
            status_code=500,
            user_message="Transcription took too long. Please try again."
        )


class FunctionInvokeError(AppError):
    pass


class MicrophoneUnavailableError(AppError):
    def __init__(self, message: str):
        super().__init__(
            message,
            status_code=500,
            user_message="Please allow microphone access to use voice features."
        )


@dataclass
class ChatErrorClassification:
    title: str
    explanation: str


# Ordered: first matching row wins. Matching is on the free-text error message
# because upstream providers do not return structured error codes.
CHAT_ERROR_TABLE = [
    (("rate limit", "rate_limit", "429"), ChatErrorClassification(
        "Rate Limit Exceeded",
        "Error: AI service rate limit exceeded. Please wait a moment and try again."
    )),
    (("quota",), ChatErrorClassification(
        "Quota Exceeded",
        "Error: API quota exceeded. Please try again later."
    )),
    (("invalid key", "api key", "api_key", "401"), ChatErrorClassification(
        "Configuration Error",
        "Error: The AI service API key is invalid or missing."
    )),
    (("non-2xx",), ChatErrorClassification(
        "Service Error",
        "Error: The AI service returned an error. Please try again."
    )),
]

GENERIC_CHAT_ERROR = ChatErrorClassification(
    "Error",
    "Sorry, I encountered an error processing your question. Please try again."
)


class ErrorHandler:
    @staticmethod
    def classify_chat_error(error: Exception) -> ChatErrorClassification:
        text = str(error).lower()
        for markers, classification in CHAT_ERROR_TABLE:
            if any(marker in text for marker in markers):
                return classification
        return GENERIC_CHAT_ERROR

    @staticmethod
    def handle_transcription_error(error: Exception) -> str:
        logger.error(f"Transcription error: {str(error)}")
        if isinstance(error, TranscriptionError):
            return error.user_message
        return "Sorry, I couldn't transcribe your audio. Please try again."

    @staticmethod
    def handle_storage_error(error: Exception) -> str:
        logger.error(f"Storage error: {str(error)}")
        return "There was an issue saving your conversation."

    @staticmethod
    def handle_narration_error(error: Exception) -> str:
        logger.warning(f"Narration error: {str(error)}")
        if isinstance(error, AppError):
            return error.user_message
        return "Failed to play audio. Please try again."
