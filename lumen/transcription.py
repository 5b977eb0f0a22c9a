import base64
import logging

from lumen.error_handler import (
    AppError,
    NoSpeechDetectedError,
    TranscriptionTimeoutError,
)
from lumen.functions_client import EdgeFunctionsClient

logger = logging.getLogger(__name__)


class TranscriptionClient:
    def __init__(self, functions: EdgeFunctionsClient):
        self.functions = functions

    async def transcribe(self, audio: bytes) -> str:
        """Send recorded audio to speech-to-text and return the transcript.

        The speech-to-text function polls the ASR vendor itself, so this is a
        single call. A vendor timeout is reported as
        ``TranscriptionTimeoutError`` rather than a crash.
        """
        if not audio:
            raise NoSpeechDetectedError("No audio recorded")

        encoded = base64.b64encode(audio).decode('ascii')
        logger.info(f"Transcribing {len(audio)} bytes of audio")
        try:
            data = await self.functions.invoke('speech-to-text', {'audio': encoded})
        except AppError as e:
            if 'timeout' in str(e).lower():
                raise TranscriptionTimeoutError(str(e))
            raise

        text = (data.get('text') or '').strip()
        if not text:
            raise NoSpeechDetectedError()
        logger.info(f"Transcription complete: {text[:50]}...")
        return text
