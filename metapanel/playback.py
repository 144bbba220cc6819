"""Serialized speech playback: one utterance at a time, in enqueue order."""

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import replace

from metapanel.models import AmplitudeEvent, Persona, SpeechJob, TTSProvider, TTSSettings
from metapanel.speech.base import SpeechBackend, SpeechError

logger = logging.getLogger(__name__)

AmplitudeListener = Callable[[AmplitudeEvent], None]


class AmplitudeBus:
    """Fan-out of amplitude samples to any number of subscribers."""

    def __init__(self) -> None:
        self._listeners: list[AmplitudeListener] = []

    def subscribe(self, listener: AmplitudeListener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: AmplitudeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Amplitude listener %r failed", listener)


def resolve_voice(settings: TTSSettings, persona_id: str | None) -> str | None:
    """Per-persona override, else the default voice."""
    override = settings.persona_voices.get(persona_id) if persona_id else None
    return override or settings.default_voice


def apply_voice_hints(settings: TTSSettings, personas: Iterable[Persona]) -> TTSSettings:
    """Fill unset Azure persona voices from persona hints. Existing entries win."""
    if settings.provider is not TTSProvider.AZURE:
        return settings
    merged = dict(settings.persona_voices)
    for persona in personas:
        if persona.voice_hint and not merged.get(persona.id):
            merged[persona.id] = persona.voice_hint
    return replace(settings, persona_voices=merged)


class PlaybackQueue:
    """Single FIFO chain of speech jobs.

    Each enqueued job waits for the previously enqueued job to finish or fail
    before it starts. Jobs never raise: failures are logged, the terminal
    zero-amplitude event is published and the chain moves on.
    """

    def __init__(
        self,
        settings: TTSSettings,
        backends: dict[TTSProvider, SpeechBackend],
        bus: AmplitudeBus | None = None,
    ) -> None:
        if TTSProvider.OFFLINE not in backends:
            raise ValueError("An offline speech backend is required as fallback")
        self._settings = settings
        self._backends = backends
        self.bus = bus or AmplitudeBus()
        self._tail: asyncio.Task[None] | None = None
        self._speaking: str | None = None
        self._playing = False

    @property
    def settings(self) -> TTSSettings:
        return self._settings

    def update_settings(self, settings: TTSSettings) -> None:
        """Replace settings; applies from the next job that starts playing."""
        self._settings = settings

    @property
    def is_speaking(self) -> bool:
        return self._playing

    @property
    def speaking_persona(self) -> str | None:
        return self._speaking

    def build_job(self, text: str, persona_id: str | None = None) -> SpeechJob:
        return SpeechJob(
            text=text,
            persona_id=persona_id,
            voice=resolve_voice(self._settings, persona_id),
            provider=self._settings.provider,
        )

    def speak(self, text: str, persona_id: str | None = None) -> asyncio.Task[None]:
        return self.enqueue(self.build_job(text, persona_id))

    def enqueue(self, job: SpeechJob) -> asyncio.Task[None]:
        """Append a job after everything enqueued so far.

        Returns a task that resolves once this job's audio has finished
        playing or failed.
        """
        previous = self._tail
        task = asyncio.get_running_loop().create_task(self._run_after(previous, job))
        self._tail = task
        return task

    async def _run_after(self, previous: asyncio.Task[None] | None, job: SpeechJob) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        await self._play(job)

    def select_backend(self, job: SpeechJob) -> SpeechBackend:
        """Requested backend if fully configured, else the offline one."""
        backend = self._backends.get(job.provider)
        if backend is not None and backend.is_configured(self._settings, job.voice):
            return backend
        if job.provider is not TTSProvider.OFFLINE:
            logger.info("Speech provider %s not configured, using offline voice", job.provider.value)
        return self._backends[TTSProvider.OFFLINE]

    async def _play(self, job: SpeechJob) -> None:
        backend = self.select_backend(job)

        def report(amp: float) -> None:
            self.bus.publish(AmplitudeEvent(job.persona_id, max(0.0, min(1.0, amp))))

        self._speaking = job.persona_id
        self._playing = True
        try:
            await backend.speak(job, self._settings, report)
        except SpeechError as exc:
            logger.warning("Speech failed for %s: %s", job.persona_id, exc)
        except Exception as exc:
            logger.warning("Unexpected speech failure for %s: %s", job.persona_id, exc)
        finally:
            self._speaking = None
            self._playing = False
            self.bus.publish(AmplitudeEvent(job.persona_id, 0.0))

    async def drain(self) -> None:
        """Wait until everything enqueued so far has played."""
        if self._tail is not None:
            await asyncio.wait({self._tail})

    async def aclose(self) -> None:
        await self.drain()
        for backend in {id(b): b for b in self._backends.values()}.values():
            await backend.aclose()
