"""Pure dataclasses for the MetaPanel pipeline. No logic, no deps."""

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ResponseMode(str, Enum):
    SEQUENTIAL = "sequential"
    FASTEST_FIRST = "fastest_first"


class TTSProvider(str, Enum):
    OFFLINE = "offline"          # local pyttsx3, no network
    AZURE = "azure"
    ELEVENLABS = "elevenlabs"


@dataclass(frozen=True)
class SpeechStyle:
    """Azure express-as / prosody tuning for one persona."""
    style: str | None = None
    styledegree: str | None = None
    rate: str | None = None
    pitch: str | None = None


@dataclass(frozen=True)
class Persona:
    id: str
    name: str
    system_prompt: str
    color: str
    voice_hint: str | None = None
    short_bio: str = ""
    speech_style: SpeechStyle | None = None


@dataclass(frozen=True)
class TranscriptMessage:
    id: str
    role: Role
    text: str
    persona_id: str | None = None    # set iff role is ASSISTANT
    author: str = ""
    is_addendum: bool = False


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str


@dataclass(frozen=True)
class ChatRequest:
    model: str
    messages: list[ChatMessage]


@dataclass(frozen=True)
class ChatResult:
    text: str
    model: str
    latency_sec: float
    fallback: bool = False
    error: str | None = None


@dataclass(frozen=True)
class PanelRunConfig:
    mode: ResponseMode
    context_window: int
    default_model: str
    model_overrides: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SpeechJob:
    text: str
    persona_id: str | None
    voice: str | None
    provider: TTSProvider


@dataclass(frozen=True)
class AmplitudeEvent:
    persona_id: str | None
    amp: float


@dataclass
class TTSSettings:
    provider: TTSProvider = TTSProvider.OFFLINE
    default_voice: str | None = None
    persona_voices: dict[str, str] = field(default_factory=dict)
    azure_region: str | None = None
    azure_key: str | None = None
    elevenlabs_key: str | None = None
