"""ElevenLabs TTS over HTTP, mp3 bytes back."""

import logging
from urllib.parse import quote

import httpx

from metapanel.models import SpeechJob, TTSSettings
from metapanel.speech.base import AmplitudeCallback, SpeechBackend, SpeechError
from metapanel.speech.player import AudioPlayer

logger = logging.getLogger(__name__)

API_ROOT = "https://api.elevenlabs.io/v1/text-to-speech"
MODEL_ID = "eleven_multilingual_v2"
VOICE_SETTINGS = {"stability": 0.5, "similarity_boost": 0.8}


def endpoint(voice_id: str) -> str:
    return f"{API_ROOT}/{quote(voice_id, safe='')}"


class ElevenLabsSpeechBackend(SpeechBackend):
    def __init__(
        self,
        player: AudioPlayer | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._player = player or AudioPlayer()
        self._client = client or httpx.AsyncClient(timeout=None)

    def name(self) -> str:
        return "elevenlabs"

    def is_configured(self, settings: TTSSettings, voice: str | None) -> bool:
        return bool(settings.elevenlabs_key and voice)

    async def synthesize(self, job: SpeechJob, settings: TTSSettings) -> bytes:
        try:
            response = await self._client.post(
                endpoint(job.voice or ""),
                params={"optimize_streaming_latency": 4},
                headers={
                    "xi-api-key": settings.elevenlabs_key or "",
                    "Accept": "audio/mpeg",
                },
                json={"text": job.text, "model_id": MODEL_ID, "voice_settings": VOICE_SETTINGS},
            )
        except httpx.HTTPError as exc:
            raise SpeechError(self.name(), f"Request failed: {exc}") from exc
        if not response.is_success:
            raise SpeechError(self.name(), f"ElevenLabs HTTP {response.status_code}")
        return response.content

    async def speak(
        self,
        job: SpeechJob,
        settings: TTSSettings,
        on_amplitude: AmplitudeCallback,
    ) -> None:
        audio = await self.synthesize(job, settings)
        logger.info("ElevenLabs synthesized %d bytes for %s", len(audio), job.persona_id)
        await self._player.play(audio, on_amplitude)

    async def aclose(self) -> None:
        await self._client.aclose()
