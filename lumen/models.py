from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import uuid4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    content: str
    role: str  # 'user' | 'assistant'
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=_utcnow)
    audio_url: Optional[str] = None
    is_playing: bool = False
    generated_image_url: Optional[str] = None
    generated_video_url: Optional[str] = None

    def to_history_entry(self) -> dict:
        return {'role': self.role, 'content': self.content}


@dataclass
class SpeechState:
    """What is being narrated and how far along it is.

    ``position`` is a character offset into ``text``, which is the cleaned
    (markdown-stripped) narration text rather than the raw message content.
    """
    message_id: Optional[str] = None
    text: str = ''
    position: int = 0
    is_paused: bool = False
    is_loading: bool = False

    @property
    def is_empty(self) -> bool:
        return self == SpeechState()


@dataclass(frozen=True)
class RemoteAudio:
    uri: str


class PlatformSynthesis:
    """Platform speech synthesis owns playback; there is no resource handle."""

    def __repr__(self) -> str:
        return 'PLATFORM_SYNTHESIS'


PLATFORM_SYNTHESIS = PlatformSynthesis()

PlaybackHandle = Union[RemoteAudio, PlatformSynthesis]


@dataclass
class SynthesisResult:
    handle: PlaybackHandle
    provider: str
    voice_id: Optional[str] = None


@dataclass
class Attachment:
    name: str
    content_type: str
    data: bytes

    @property
    def is_image(self) -> bool:
        return (self.content_type or '').startswith('image/')
