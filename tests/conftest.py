import pytest
from unittest.mock import MagicMock
import sys
from pathlib import Path

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

# Mock Supabase before anything builds a client
import supabase
def mock_create_client(*args, **kwargs):
    mock_client = MagicMock()
    mock_client.table = MagicMock()
    mock_client.auth = MagicMock()
    return mock_client

supabase.create_client = mock_create_client

from lumen.notifications import Notifier
from lumen.playback import AudioPlayer, SpeechSynthesizer
from lumen.providers import SpeechProvider


class FakeProvider(SpeechProvider):
    def __init__(self, name, error=None, audio=b'fake-mp3', calls=None, configured=True):
        self.name = name
        self.error = error
        self.audio = audio
        self.calls = calls if calls is not None else []
        self._configured = configured

    @property
    def configured(self):
        return self._configured

    async def synthesize(self, text, voice=None):
        self.calls.append(self.name)
        if self.error:
            raise self.error
        return self.audio


class FakePlayer(AudioPlayer):
    def __init__(self):
        self.time = 0.0
        self.plays = []
        self.paused = 0
        self.stopped = 0
        self.on_ended = None
        self.on_error = None

    @property
    def current_time(self):
        return self.time

    def play(self, uri, start_at, on_ended, on_error):
        self.plays.append((uri, start_at))
        self.on_ended = on_ended
        self.on_error = on_error

    def pause(self):
        self.paused += 1

    def stop(self):
        self.stopped += 1


class FakeSynthesizer(SpeechSynthesizer):
    def __init__(self, available=True):
        self._available = available
        self.spoken = []
        self.cancelled = 0
        self.on_end = None
        self.on_error = None

    @property
    def available(self):
        return self._available

    def speak(self, text, on_end, on_error):
        self.spoken.append(text)
        self.on_end = on_end
        self.on_error = on_error

    def cancel(self):
        self.cancelled += 1


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeFunctions:
    """Stands in for EdgeFunctionsClient; responses may be dicts or exceptions."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    async def invoke(self, name, body):
        self.calls.append((name, body))
        response = self.responses.get(name, {})
        if isinstance(response, Exception):
            raise response
        return response

    def bodies(self, name):
        return [body for called, body in self.calls if called == name]


@pytest.fixture
def make_provider():
    return FakeProvider

@pytest.fixture
def player():
    return FakePlayer()

@pytest.fixture
def synthesizer():
    return FakeSynthesizer()

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def notifier():
    return Notifier()

@pytest.fixture
def make_functions():
    return FakeFunctions

@pytest.fixture
def make_synthesizer():
    return FakeSynthesizer
