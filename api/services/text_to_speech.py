import base64
import logging
from typing import Optional

from lumen.error_handler import AppError
from lumen.providers import ElevenLabsProvider, OpenAISpeechProvider

logger = logging.getLogger(__name__)


class TextToSpeechService:
    def __init__(self, primary: ElevenLabsProvider, secondary: OpenAISpeechProvider):
        self.primary = primary
        self.secondary = secondary

    async def synthesize(self, text: str, voice: Optional[str] = None) -> str:
        """Return base64 audio, trying ElevenLabs before OpenAI."""
        primary_error = None
        if self.primary.configured:
            try:
                audio = await self.primary.synthesize(text, voice)
                logger.info("Speech generated with ElevenLabs")
                return base64.b64encode(audio).decode('ascii')
            except Exception as e:
                logger.warning(f"ElevenLabs failed, falling back to OpenAI: {str(e)}")
                primary_error = e
        else:
            logger.info("ElevenLabs not configured, using OpenAI")

        if not self.secondary.configured:
            raise AppError(
                f"Both TTS services failed. ElevenLabs: {primary_error or 'not configured'}. "
                f"OpenAI: API key not configured",
                status_code=400
            )
        try:
            audio = await self.secondary.synthesize(text)
        except Exception as e:
            logger.error(f"OpenAI TTS failed: {str(e)}")
            raise AppError(
                f"Both TTS services failed. ElevenLabs: {primary_error or 'not configured'}. OpenAI: {str(e)}",
                status_code=400
            )

        logger.info("Speech generated with OpenAI")
        return base64.b64encode(audio).decode('ascii')
