import io
import logging
import wave
from typing import Callable, List, Optional

import numpy as np

from lumen.error_handler import MicrophoneUnavailableError

logger = logging.getLogger(__name__)


def _open_input_stream(sample_rate: int, channels: int, callback: Callable):
    # Imported here so the module loads on hosts without PortAudio.
    import sounddevice as sd

    return sd.InputStream(
        samplerate=sample_rate,
        channels=channels,
        dtype='int16',
        callback=callback
    )


class AudioCapture:
    """Microphone capture producing a WAV-encoded blob."""

    def __init__(self, sample_rate: int = 24000, channels: int = 1, stream_factory: Optional[Callable] = None):
        self.sample_rate = sample_rate
        self.channels = channels
        self._stream_factory = stream_factory or _open_input_stream
        self._stream = None
        self._frames: List[np.ndarray] = []

    @property
    def is_recording(self) -> bool:
        return self._stream is not None

    def _on_audio(self, indata, frames, time_info, status) -> None:
        if status:
            logger.warning(f"Audio input status: {status}")
        self._frames.append(np.array(indata, dtype=np.int16, copy=True))

    def start(self) -> None:
        if self.is_recording:
            logger.warning("Recording already in progress")
            return
        self._frames = []
        try:
            stream = self._stream_factory(self.sample_rate, self.channels, self._on_audio)
            stream.start()
        except Exception as e:
            logger.error(f"Error starting audio recording: {str(e)}")
            raise MicrophoneUnavailableError(f"Failed to start recording: {str(e)}")
        self._stream = stream
        logger.info(f"Recording started at {self.sample_rate} Hz")

    def stop(self) -> bytes:
        if not self.is_recording:
            return b''
        stream, self._stream = self._stream, None
        try:
            stream.stop()
        finally:
            stream.close()

        frames, self._frames = self._frames, []
        if not frames:
            logger.info("Recording stopped with no audio captured")
            return b''
        audio = np.concatenate(frames)
        logger.info(f"Recording stopped: {len(audio)} samples")
        return self._encode_wav(audio)

    def _encode_wav(self, audio: np.ndarray) -> bytes:
        buffer = io.BytesIO()
        with wave.open(buffer, 'wb') as wav_file:
            wav_file.setnchannels(self.channels)
            wav_file.setsampwidth(2)
            wav_file.setframerate(self.sample_rate)
            wav_file.writeframes(audio.astype(np.int16).tobytes())
        return buffer.getvalue()
