import asyncio
import logging
from typing import Any, Dict

import aiohttp

from lumen.error_handler import AppError, TranscriptionTimeoutError

logger = logging.getLogger(__name__)

ASSEMBLYAI_API_URL = 'https://api.assemblyai.com/v2'


class SpeechToTextService:
    """Transcribes uploaded audio with AssemblyAI's upload/submit/poll API."""

    def __init__(self, api_key: str, max_attempts: int = 30, poll_interval: float = 1.0):
        self.api_key = api_key
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        logger.info(f"Speech-to-text service initialized (max {max_attempts} polls)")

    async def transcribe(self, audio: bytes) -> str:
        if not self.api_key:
            raise AppError("AssemblyAI API key not configured", status_code=500)

        logger.info(f"Processing speech-to-text request: {len(audio)} bytes")
        async with aiohttp.ClientSession(headers={'Authorization': self.api_key}) as session:
            upload_url = await self._upload(session, audio)
            transcript_id = await self._submit(session, upload_url)
            transcript = await self._wait_for_transcript(session, transcript_id)

        text = transcript.get('text') or ''
        logger.info(f"Transcription complete: {text[:50]}...")
        return text

    async def _upload(self, session, audio: bytes) -> str:
        async with session.post(
            f"{ASSEMBLYAI_API_URL}/upload",
            data=audio,
            headers={'Content-Type': 'application/octet-stream'}
        ) as response:
            if response.status != 200:
                error_text = await response.text()
                logger.error(f"AssemblyAI upload error: {error_text}")
                raise AppError(f"AssemblyAI upload error: {error_text}")
            result = await response.json()

        logger.info("Audio uploaded to AssemblyAI")
        return result['upload_url']

    async def _submit(self, session, audio_url: str) -> str:
        payload = {'audio_url': audio_url, 'language_code': 'en_us'}
        async with session.post(f"{ASSEMBLYAI_API_URL}/transcript", json=payload) as response:
            if response.status != 200:
                error_text = await response.text()
                logger.error(f"AssemblyAI transcript error: {error_text}")
                raise AppError(f"AssemblyAI transcript error: {error_text}")
            result = await response.json()

        logger.info(f"Transcription submitted, ID: {result['id']}")
        return result['id']

    async def _poll_once(self, session, transcript_id: str) -> Dict[str, Any]:
        async with session.get(f"{ASSEMBLYAI_API_URL}/transcript/{transcript_id}") as response:
            if response.status != 200:
                error_text = await response.text()
                logger.error(f"AssemblyAI poll error: {error_text}")
                raise AppError(f"AssemblyAI poll error: {error_text}")
            return await response.json()

    async def _wait_for_transcript(self, session, transcript_id: str) -> Dict[str, Any]:
        for attempt in range(self.max_attempts):
            transcript = await self._poll_once(session, transcript_id)
            status = transcript.get('status')
            if status == 'completed':
                return transcript
            if status == 'error':
                raise AppError(f"Transcription failed: {transcript.get('error')}")
            logger.debug(f"Transcript {transcript_id} is {status} (attempt {attempt + 1})")
            await asyncio.sleep(self.poll_interval)

        raise TranscriptionTimeoutError()
