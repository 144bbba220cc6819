"""Azure neural TTS: SSML over HTTP, mp3 bytes back."""

import logging
from xml.sax.saxutils import escape, quoteattr

import httpx

from metapanel.models import SpeechJob, SpeechStyle, TTSSettings
from metapanel.speech.base import AmplitudeCallback, SpeechBackend, SpeechError
from metapanel.speech.player import AudioPlayer

logger = logging.getLogger(__name__)

OUTPUT_FORMAT = "audio-24khz-48kbitrate-mono-mp3"
USER_AGENT = "MetaPanel"


def endpoint(region: str) -> str:
    return f"https://{region}.tts.speech.microsoft.com/cognitiveservices/v1"


def escape_text(text: str) -> str:
    return escape(text, {'"': "&quot;", "'": "&apos;"})


def build_ssml(text: str, voice: str, style: SpeechStyle | None = None) -> str:
    """Wrap text in an SSML document, applying persona prosody when given."""
    prosody_attrs = ""
    if style and style.rate:
        prosody_attrs += f" rate={quoteattr(style.rate)}"
    if style and style.pitch:
        prosody_attrs += f" pitch={quoteattr(style.pitch)}"
    body = f"<prosody{prosody_attrs}>{escape_text(text)}</prosody>"

    if style and style.style:
        degree = f" styledegree={quoteattr(style.styledegree)}" if style.styledegree else ""
        body = f"<mstts:express-as style={quoteattr(style.style)}{degree}>{body}</mstts:express-as>"

    return (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        '<speak version="1.0" xml:lang="en-US" xmlns:mstts="https://www.w3.org/2001/mstts">'
        f"<voice name={quoteattr(voice)}>{body}</voice></speak>"
    )


class AzureSpeechBackend(SpeechBackend):
    def __init__(
        self,
        styles: dict[str, SpeechStyle] | None = None,
        player: AudioPlayer | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._styles = styles or {}
        self._player = player or AudioPlayer()
        self._client = client or httpx.AsyncClient(timeout=None)

    def name(self) -> str:
        return "azure"

    def is_configured(self, settings: TTSSettings, voice: str | None) -> bool:
        return bool(settings.azure_region and settings.azure_key and voice)

    async def synthesize(self, job: SpeechJob, settings: TTSSettings) -> bytes:
        style = self._styles.get(job.persona_id) if job.persona_id else None
        ssml = build_ssml(job.text, job.voice or "", style)
        try:
            response = await self._client.post(
                endpoint(settings.azure_region or ""),
                content=ssml.encode("utf-8"),
                headers={
                    "Content-Type": "application/ssml+xml",
                    "Ocp-Apim-Subscription-Key": settings.azure_key or "",
                    "X-Microsoft-OutputFormat": OUTPUT_FORMAT,
                    "User-Agent": USER_AGENT,
                },
            )
        except httpx.HTTPError as exc:
            raise SpeechError(self.name(), f"Request failed: {exc}") from exc
        if not response.is_success:
            raise SpeechError(self.name(), f"Azure TTS HTTP {response.status_code}")
        return response.content

    async def speak(
        self,
        job: SpeechJob,
        settings: TTSSettings,
        on_amplitude: AmplitudeCallback,
    ) -> None:
        audio = await self.synthesize(job, settings)
        logger.info("Azure synthesized %d bytes for %s", len(audio), job.persona_id)
        await self._player.play(audio, on_amplitude)

    async def aclose(self) -> None:
        await self._client.aclose()
