"""Playback backends and the narration position estimator.

Remote audio exposes a time cursor; platform speech synthesis exposes none.
Both are mapped to a character offset with the same linear estimate::

    estimated_duration = len(text) / chars_per_second
    position = (elapsed / estimated_duration) * len(text)

Word-level timing from providers is not used.
"""
import asyncio
import base64
import logging
import os
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

logger = logging.getLogger(__name__)

CHARS_PER_SECOND = 15.0
POLL_INTERVAL = 0.5

_EXTENSIONS = {
    'audio/mpeg': '.mp3',
    'audio/mp3': '.mp3',
    'audio/wav': '.wav',
    'audio/ogg': '.ogg',
    'audio/webm': '.webm',
}


def estimate_duration(length: int, chars_per_second: float = CHARS_PER_SECOND) -> float:
    return length / chars_per_second


def estimate_position(elapsed: float, length: int, chars_per_second: float = CHARS_PER_SECOND) -> int:
    if length <= 0:
        return 0
    duration = estimate_duration(length, chars_per_second)
    position = int((elapsed / duration) * length)
    return max(0, min(position, length))


class AudioPlayer(ABC):
    """Plays a remote audio resource and reports a time cursor."""

    @abstractmethod
    def play(self, uri: str, start_at: float, on_ended: Callable[[], None],
             on_error: Callable[[Exception], None]) -> None:
        ...

    @abstractmethod
    def pause(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...

    @property
    @abstractmethod
    def current_time(self) -> float:
        """Seconds from the start of the resource."""


class SpeechSynthesizer(ABC):
    """Platform speech synthesis. It can only be cancelled, never paused."""

    @property
    @abstractmethod
    def available(self) -> bool:
        ...

    @abstractmethod
    def speak(self, text: str, on_end: Callable[[], None],
              on_error: Callable[[Exception], None]) -> None:
        ...

    @abstractmethod
    def cancel(self) -> None:
        ...


def _write_data_uri(uri: str) -> str:
    header, encoded = uri.split(',', 1)
    mime_type = header[len('data:'):].split(';', 1)[0]
    suffix = _EXTENSIONS.get(mime_type, '.mp3')
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as temp_file:
        temp_file.write(base64.b64decode(encoded))
        return temp_file.name


class _SubprocessRunner:
    """Runs one command at a time; halted runs never report back."""

    def __init__(self):
        self._process: Optional[asyncio.subprocess.Process] = None
        self._task: Optional[asyncio.Task] = None
        self._run_id = 0

    def start(self, argv_factory: Callable[[], Sequence[str]], on_done: Callable[[], None],
              on_error: Callable[[Exception], None], cleanup: Optional[Callable[[], None]] = None) -> None:
        self.halt()
        run_id = self._run_id
        self._task = asyncio.get_running_loop().create_task(self._run(run_id, argv_factory, on_done, on_error, cleanup))

    async def _run(self, run_id, argv_factory, on_done, on_error, cleanup) -> None:
        try:
            argv = argv_factory()
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL
            )
            if run_id == self._run_id:
                self._process = process
            else:
                process.terminate()
            returncode = await process.wait()
        except Exception as e:
            logger.error(f"Playback process failed: {str(e)}")
            if run_id == self._run_id:
                on_error(e)
            return
        finally:
            if cleanup:
                cleanup()

        if run_id != self._run_id:
            return
        if returncode == 0:
            on_done()
        else:
            on_error(RuntimeError(f"{argv[0]} exited with status {returncode}"))

    def halt(self) -> None:
        self._run_id += 1
        if self._process is not None and self._process.returncode is None:
            self._process.terminate()
        self._process = None


class SubprocessAudioPlayer(AudioPlayer):
    """Plays audio through ``ffplay``; the cursor is wall-clock based."""

    def __init__(self, command: str = 'ffplay', clock: Callable[[], float] = time.monotonic):
        self.command = command
        self.clock = clock
        self._runner = _SubprocessRunner()
        self._start_at = 0.0
        self._started: Optional[float] = None
        self._frozen: Optional[float] = 0.0

    @property
    def current_time(self) -> float:
        if self._frozen is not None:
            return self._frozen
        return self._start_at + (self.clock() - self._started)

    def play(self, uri, start_at, on_ended, on_error) -> None:
        self._start_at = start_at
        self._started = self.clock()
        self._frozen = None
        temp_paths = []

        def argv():
            source = uri
            if uri.startswith('data:'):
                source = _write_data_uri(uri)
                temp_paths.append(source)
            return [self.command, '-nodisp', '-autoexit', '-loglevel', 'quiet', '-ss', f"{start_at:.2f}", source]

        def cleanup():
            for path in temp_paths:
                if os.path.exists(path):
                    os.remove(path)

        self._runner.start(argv, on_ended, on_error, cleanup=cleanup)

    def pause(self) -> None:
        if self._frozen is None:
            self._frozen = self.current_time
        self._runner.halt()

    def stop(self) -> None:
        self._frozen = 0.0
        self._runner.halt()


class CommandSpeechSynthesizer(SpeechSynthesizer):
    """Speaks through the host's ``say`` or ``espeak`` command."""

    def __init__(self, command: Optional[str] = None):
        self.command = command or shutil.which('say') or shutil.which('espeak')
        self._runner = _SubprocessRunner()

    @property
    def available(self) -> bool:
        return bool(self.command)

    def speak(self, text, on_end, on_error) -> None:
        self._runner.start(lambda: [self.command, text], on_end, on_error)

    def cancel(self) -> None:
        self._runner.halt()
