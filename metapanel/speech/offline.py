"""Offline speech through the platform engine via pyttsx3."""

import asyncio
import logging

import pyttsx3

from metapanel.models import SpeechJob, TTSSettings
from metapanel.speech.base import AmplitudeCallback, SpeechBackend, SpeechError

logger = logging.getLogger(__name__)

# pyttsx3 exposes no audio samples; report a constant level while talking
BASELINE_AMPLITUDE = 0.2


class OfflineSpeechBackend(SpeechBackend):
    """Zero-configuration baseline backend. Never needs network or keys."""

    def __init__(self, rate: int | None = None) -> None:
        self._rate = rate

    def name(self) -> str:
        return "offline"

    def _say(self, text: str, voice: str | None, on_start: AmplitudeCallback) -> None:
        engine = pyttsx3.init()
        if self._rate:
            engine.setProperty("rate", self._rate)
        if voice:
            for candidate in engine.getProperty("voices"):
                if candidate.name == voice:
                    engine.setProperty("voice", candidate.id)
                    break
            else:
                logger.debug("Voice %r not installed, using engine default", voice)
        token = engine.connect("started-utterance", lambda name: on_start(BASELINE_AMPLITUDE))
        try:
            engine.say(text)
            engine.runAndWait()
        finally:
            engine.disconnect(token)

    async def speak(
        self,
        job: SpeechJob,
        settings: TTSSettings,
        on_amplitude: AmplitudeCallback,
    ) -> None:
        loop = asyncio.get_running_loop()

        def on_start(amp: float) -> None:
            loop.call_soon_threadsafe(on_amplitude, amp)

        try:
            await loop.run_in_executor(None, self._say, job.text, job.voice, on_start)
        except Exception as exc:
            raise SpeechError(self.name(), f"Engine failed: {exc}") from exc
