import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from lumen.error_handler import (
    CannotNarrateError,
    ErrorHandler,
    MutedError,
    NarrationError,
    SynthesisUnavailableError,
)
from lumen.models import Message, PlaybackHandle, RemoteAudio, SpeechState, SynthesisResult
from lumen.notifications import Notifier
from lumen.playback import (
    CHARS_PER_SECOND,
    POLL_INTERVAL,
    AudioPlayer,
    SpeechSynthesizer,
    SubprocessAudioPlayer,
    estimate_position,
)
from lumen.providers import ProviderChain
from lumen.text import clean_text_for_speech, is_error_content

logger = logging.getLogger(__name__)

AudioResolvedHook = Callable[[Message, SynthesisResult], Awaitable[None]]


class SpeechOrchestrator:
    """Narration session: reads assistant messages aloud, one at a time.

    Every playback start bumps ``generation``. Callbacks and the position
    polling task capture the generation they were started under and do
    nothing once it is stale, so a late ``on_ended`` from an earlier
    narration cannot touch the current one.
    """

    def __init__(
        self,
        messages: List[Message],
        provider_chain: ProviderChain,
        player: Optional[AudioPlayer] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
        notifier: Optional[Notifier] = None,
        chars_per_second: float = CHARS_PER_SECOND,
        poll_interval: float = POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        on_audio_resolved: Optional[AudioResolvedHook] = None
    ):
        self.messages = messages
        self.provider_chain = provider_chain
        self.player = player or SubprocessAudioPlayer()
        self.synthesizer = synthesizer if synthesizer is not None else provider_chain.synthesizer
        self.notifier = notifier or Notifier()
        self.chars_per_second = chars_per_second
        self.poll_interval = poll_interval
        self.clock = clock
        self.on_audio_resolved = on_audio_resolved

        self.state = SpeechState()
        self.handle: Optional[PlaybackHandle] = None
        self.muted = False
        self.generation = 0
        self._poll_task: Optional[asyncio.Task] = None
        self._synthesis_started_at = 0.0
        self._synthesis_offset = 0

    @property
    def progress(self) -> float:
        if self.state.message_id is None or not self.state.text:
            return 0.0
        return self.state.position / len(self.state.text)

    async def start_speech(self, message_id: str, content: str) -> Optional[SynthesisResult]:
        if self.muted:
            raise MutedError()
        if is_error_content(content):
            raise CannotNarrateError()
        cleaned = clean_text_for_speech(content)
        if not cleaned:
            raise CannotNarrateError()

        self._halt_backends()
        token = self.generation
        self.handle = None
        self.state = SpeechState(message_id=message_id, text=cleaned, position=0, is_paused=False, is_loading=True)
        self._set_playing(message_id, True)
        logger.info(f"Starting narration of message {message_id} ({len(cleaned)} chars)")

        try:
            result = await self.provider_chain.resolve(cleaned)
        except SynthesisUnavailableError:
            if not self._is_current(token):
                logger.info(f"Narration of message {message_id} superseded before synthesis failed")
                return None
            self._reset()
            raise

        if not self._is_current(token):
            logger.info(f"Narration of message {message_id} superseded while loading audio")
            return None

        self.handle = result.handle
        self.state.is_loading = False
        self._begin(0)

        message = self._find_message(message_id)
        if isinstance(result.handle, RemoteAudio) and message is not None:
            message.audio_url = result.handle.uri
            if self.on_audio_resolved is not None:
                try:
                    await self.on_audio_resolved(message, result)
                except Exception as e:
                    logger.error(f"Failed to record narration audio: {str(e)}")
        return result

    def pause_speech(self) -> bool:
        state = self.state
        if state.message_id is None or state.is_paused or state.is_loading:
            return False

        self._advance()
        self._cancel_polling()
        if isinstance(self.handle, RemoteAudio):
            self.player.pause()
        elif self.synthesizer is not None:
            # Platform synthesis cannot pause; resume restarts from position.
            self.synthesizer.cancel()

        state.is_paused = True
        self._set_playing(state.message_id, False)
        logger.info(f"Narration paused at {state.position}/{len(state.text)}")
        return True

    async def resume_speech(self) -> bool:
        state = self.state
        if not state.is_paused or state.message_id is None or self.handle is None:
            return False
        if self.muted:
            raise MutedError()

        state.is_paused = False
        self._set_playing(state.message_id, True)
        logger.info(f"Resuming narration at {state.position}/{len(state.text)}")
        self._begin(state.position)
        return True

    def stop_speech(self) -> None:
        self._halt_backends()
        self._reset()

    async def handle_read_aloud(self, message_id: str, content: str) -> bool:
        try:
            if self.state.message_id == message_id:
                if self.state.is_loading:
                    return True
                if self.state.is_paused:
                    await self.resume_speech()
                else:
                    self.pause_speech()
                return True

            self.stop_speech()
            await self.start_speech(message_id, content)
            return True
        except NarrationError as e:
            self.notifier.error(e.title, ErrorHandler.handle_narration_error(e))
            return False

    def toggle_mute(self) -> bool:
        self.muted = not self.muted
        if self.muted:
            self.stop_speech()
            self.notifier.notify("Audio Muted", "AI responses are muted")
        else:
            self.notifier.notify("Audio Enabled", "You will hear AI responses")
        return self.muted

    def update_position(self) -> int:
        """Re-estimate the narrated character offset; it never moves back."""
        state = self.state
        if state.message_id is None or state.is_paused or state.is_loading or self.handle is None:
            return state.position

        length = len(state.text)
        if isinstance(self.handle, RemoteAudio):
            estimate = estimate_position(self.player.current_time, length, self.chars_per_second)
        else:
            elapsed = self.clock() - self._synthesis_started_at
            remaining = length - self._synthesis_offset
            estimate = self._synthesis_offset + estimate_position(elapsed, remaining, self.chars_per_second)

        if estimate > state.position:
            state.position = estimate
        return state.position

    def _begin(self, position: int) -> None:
        token = self._advance()

        def on_end():
            self._on_playback_end(token)

        def on_error(error: Exception):
            self._on_playback_error(token, error)

        try:
            if isinstance(self.handle, RemoteAudio):
                self.player.play(self.handle.uri, position / self.chars_per_second, on_end, on_error)
            else:
                self._synthesis_offset = position
                self._synthesis_started_at = self.clock()
                self.synthesizer.speak(self.state.text[position:], on_end, on_error)
        except Exception as e:
            on_error(e)
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_position(token))

    async def _poll_position(self, token: int) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            if not self._is_current(token):
                return
            self.update_position()

    def _on_playback_end(self, token: int) -> None:
        if not self._is_current(token):
            logger.debug("Ignoring end of a stale narration")
            return
        logger.info(f"Narration of message {self.state.message_id} finished")
        self._advance()
        self._cancel_polling()
        self._reset()

    def _on_playback_error(self, token: int, error: Exception) -> None:
        if not self._is_current(token):
            logger.debug(f"Ignoring error from a stale narration: {str(error)}")
            return
        logger.error(f"Narration playback error: {str(error)}")
        self._advance()
        self._cancel_polling()
        self._reset()
        self.notifier.error("Playback Error", "Failed to play audio. Please try again.")

    def _halt_backends(self) -> None:
        self._advance()
        self._cancel_polling()
        # Clear both backends; a queued utterance can outlive a remote stop.
        self.player.stop()
        if self.synthesizer is not None:
            self.synthesizer.cancel()

    def _reset(self) -> None:
        self.state = SpeechState()
        self.handle = None
        for message in self.messages:
            message.is_playing = False

    def _set_playing(self, message_id: str, playing: bool) -> None:
        for message in self.messages:
            if message.id == message_id:
                message.is_playing = playing
            elif playing:
                message.is_playing = False

    def _find_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def _advance(self) -> int:
        self.generation += 1
        return self.generation

    def _is_current(self, token: int) -> bool:
        return token == self.generation

    def _cancel_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
