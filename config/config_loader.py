"""Load settings.yaml into typed dataclasses. Resolves speech keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

MAX_CONTEXT_WINDOW = 50
MODES = ("sequential", "fastest_first")
TTS_PROVIDERS = ("offline", "azure", "elevenlabs")


@dataclass
class ChatConfig:
    base_url: str
    model: str
    timeout_sec: float | None = None
    model_overrides: dict[str, str] = field(default_factory=dict)


@dataclass
class PanelConfig:
    mode: str
    context_window: int
    personas_dir: Path
    members: list[str] = field(default_factory=list)


@dataclass
class SpeechConfig:
    enabled: bool
    provider: str
    default_voice: str | None = None
    persona_voices: dict[str, str] = field(default_factory=dict)
    azure_region: str | None = None
    azure_key_env: str = "AZURE_SPEECH_KEY"
    elevenlabs_key_env: str = "ELEVENLABS_API_KEY"
    azure_key: str | None = None
    elevenlabs_key: str | None = None
    rate: int | None = None


@dataclass
class AppConfig:
    chat: ChatConfig
    panel: PanelConfig
    speech: SpeechConfig


def clamp_context_window(value: int) -> int:
    clamped = max(0, min(MAX_CONTEXT_WINDOW, value))
    if clamped != value:
        logger.warning("context_window %d out of range, using %d", value, clamped)
    return clamped


def _str_map(raw: dict | None) -> dict[str, str]:
    return {str(k): str(v) for k, v in (raw or {}).items() if v}


def _env_key(env_name: str) -> str | None:
    return os.environ.get(env_name, "").strip() or None


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError for an
    unknown mode or speech provider. Missing speech keys are only logged;
    the playback queue falls back to the offline voice.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    chat_raw = raw.get("chat", {})
    timeout = chat_raw.get("timeout_sec")
    chat = ChatConfig(
        base_url=str(chat_raw.get("base_url", "http://localhost:11434")),
        model=str(chat_raw.get("model", "llama3.1")),
        timeout_sec=float(timeout) if timeout is not None else None,
        model_overrides=_str_map(chat_raw.get("model_overrides")),
    )

    panel_raw = raw.get("panel", {})
    mode = str(panel_raw.get("mode", "sequential"))
    if mode not in MODES:
        raise ValueError(f"Unknown panel mode '{mode}', expected one of {MODES}")
    personas_dir = Path(panel_raw.get("personas_dir", "personas"))
    if not personas_dir.is_absolute():
        personas_dir = settings_path.parent / personas_dir
    panel = PanelConfig(
        mode=mode,
        context_window=clamp_context_window(int(panel_raw.get("context_window", 20))),
        personas_dir=personas_dir,
        members=[str(m) for m in panel_raw.get("members", [])],
    )

    speech_raw = raw.get("speech", {})
    provider = str(speech_raw.get("provider", "offline"))
    if provider not in TTS_PROVIDERS:
        raise ValueError(f"Unknown speech provider '{provider}', expected one of {TTS_PROVIDERS}")
    speech = SpeechConfig(
        enabled=bool(speech_raw.get("enabled", True)),
        provider=provider,
        default_voice=speech_raw.get("default_voice") or None,
        persona_voices=_str_map(speech_raw.get("persona_voices")),
        azure_region=speech_raw.get("azure_region") or None,
        azure_key_env=str(speech_raw.get("azure_key_env", "AZURE_SPEECH_KEY")),
        elevenlabs_key_env=str(speech_raw.get("elevenlabs_key_env", "ELEVENLABS_API_KEY")),
        rate=int(speech_raw["rate"]) if speech_raw.get("rate") else None,
    )
    speech.azure_key = _env_key(speech.azure_key_env)
    speech.elevenlabs_key = _env_key(speech.elevenlabs_key_env)

    if provider == "azure" and not (speech.azure_key and speech.azure_region):
        logger.info(
            "Azure speech not configured (set %s and azure_region); offline voice will be used",
            speech.azure_key_env,
        )
    elif provider == "elevenlabs" and not speech.elevenlabs_key:
        logger.info(
            "ElevenLabs speech not configured (set %s); offline voice will be used",
            speech.elevenlabs_key_env,
        )

    return AppConfig(chat=chat, panel=panel, speech=speech)
