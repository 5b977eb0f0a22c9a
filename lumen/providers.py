import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from typing import List, Mapping, Optional, Sequence

import aiohttp
import openai
from openai import OpenAI

from lumen.config import Settings
from lumen.error_handler import (
    ConfigurationError,
    ProviderError,
    QuotaExceededError,
    RateLimitError,
    SynthesisUnavailableError,
    UnusualActivityError,
)
from lumen.models import PLATFORM_SYNTHESIS, RemoteAudio, SynthesisResult
from lumen.playback import SpeechSynthesizer

logger = logging.getLogger(__name__)

ELEVENLABS_API_URL = 'https://api.elevenlabs.io/v1/text-to-speech'


class SpeechProvider(ABC):
    """A remote text-to-speech vendor."""

    name = 'unknown'
    mime_type = 'audio/mpeg'
    voice_id: Optional[str] = None

    @property
    @abstractmethod
    def configured(self) -> bool:
        ...

    @abstractmethod
    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        ...


class ElevenLabsProvider(SpeechProvider):
    name = 'elevenlabs'

    def __init__(self, api_key: str, voice_id: str = '9BWtsMINqrJLrRacOk9x', timeout: float = 60):
        self.api_key = api_key
        self.voice_id = voice_id
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        voice_id = voice or self.voice_id
        payload = {
            'text': text,
            'model_id': 'eleven_turbo_v2',
            'voice_settings': {
                'stability': 0.5,
                'similarity_boost': 0.75,
                'style': 0.0,
                'use_speaker_boost': True,
            },
        }
        headers = {'xi-api-key': self.api_key, 'Content-Type': 'application/json'}

        logger.info(f"Requesting ElevenLabs speech: {len(text)} chars, voice {voice_id}")
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(f"{ELEVENLABS_API_URL}/{voice_id}", json=payload, headers=headers) as response:
                if response.status != 200:
                    body = await response.text()
                    self.raise_for_status(response.status, body, response.headers)
                audio = await response.read()

        logger.info(f"ElevenLabs returned {len(audio)} bytes")
        return audio

    @classmethod
    def raise_for_status(cls, status: int, body: str, headers: Optional[Mapping[str, str]] = None) -> None:
        message = f"ElevenLabs API error: {status} - {body}"
        logger.error(message)
        if status == 401:
            raise ConfigurationError(message, provider=cls.name)
        if status == 429:
            retry_after = (headers or {}).get('retry-after')
            raise RateLimitError(message, provider=cls.name, retry_after=retry_after)
        if 'unusual_activity' in body:
            raise UnusualActivityError(message, provider=cls.name)
        raise ProviderError(message, provider=cls.name, status_code=status)


class OpenAISpeechProvider(SpeechProvider):
    name = 'openai'
    voice_id = 'alloy'

    def __init__(self, api_key: str, client: Optional[OpenAI] = None):
        self.api_key = api_key
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_key) or self._client is not None

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        logger.info(f"Requesting OpenAI speech: {len(text)} chars")
        # The SDK call blocks, so run it in an executor
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                lambda: self.client.audio.speech.create(
                    model='tts-1',
                    voice=self.voice_id,
                    input=text,
                    response_format='mp3'
                )
            )
        except openai.AuthenticationError as e:
            raise ConfigurationError(f"OpenAI TTS: invalid API key: {str(e)}", provider=self.name)
        except openai.RateLimitError as e:
            if 'quota' in str(e).lower():
                raise QuotaExceededError(f"OpenAI TTS: API quota exceeded: {str(e)}", provider=self.name)
            raise RateLimitError(f"OpenAI TTS: rate limit: {str(e)}", provider=self.name)
        except openai.APIError as e:
            raise ProviderError(f"OpenAI TTS API error: {str(e)}", provider=self.name)

        audio = response.content
        logger.info(f"OpenAI returned {len(audio)} bytes")
        return audio


def to_data_uri(audio: bytes, mime_type: str = 'audio/mpeg') -> str:
    return f"data:{mime_type};base64,{base64.b64encode(audio).decode('ascii')}"


class ProviderChain:
    """Ordered text-to-speech fallback ending in platform speech synthesis.

    Remote providers are tried one at a time, in order. Any failure moves on
    to the next tier; nothing is raised until every tier is exhausted.
    """

    def __init__(self, providers: Sequence[SpeechProvider], synthesizer: Optional[SpeechSynthesizer] = None):
        self.providers = list(providers)
        self.synthesizer = synthesizer
        self.attempts: List[str] = []

    async def resolve(self, text: str) -> SynthesisResult:
        self.attempts = []
        errors: List[Exception] = []

        for provider in self.providers:
            if not provider.configured:
                logger.info(f"{provider.name} not configured, skipping")
                continue
            self.attempts.append(provider.name)
            try:
                audio = await provider.synthesize(text)
            except Exception as e:
                logger.warning(f"{provider.name} failed ({type(e).__name__}): {str(e)}; trying next provider")
                errors.append(e)
                continue
            if not audio:
                logger.warning(f"{provider.name} returned no audio; trying next provider")
                errors.append(ProviderError("Empty audio response", provider=provider.name))
                continue
            logger.info(f"Speech generated with {provider.name}")
            return SynthesisResult(
                handle=RemoteAudio(to_data_uri(audio, provider.mime_type)),
                provider=provider.name,
                voice_id=provider.voice_id
            )

        if self.synthesizer is not None and self.synthesizer.available:
            self.attempts.append('platform')
            logger.info("Remote providers unavailable, using platform speech synthesis")
            return SynthesisResult(handle=PLATFORM_SYNTHESIS, provider='platform')

        logger.error(f"No speech provider available after {len(errors)} failures")
        raise SynthesisUnavailableError(errors=errors)


def build_default_chain(settings: Settings, synthesizer: Optional[SpeechSynthesizer] = None) -> ProviderChain:
    return ProviderChain(
        providers=[
            ElevenLabsProvider(settings.elevenlabs_api_key, settings.elevenlabs_voice_id),
            OpenAISpeechProvider(settings.openai_api_key),
        ],
        synthesizer=synthesizer
    )
