"""Abstract base for text-to-speech backends."""

from abc import ABC, abstractmethod
from collections.abc import Callable

from metapanel.models import SpeechJob, TTSSettings

AmplitudeCallback = Callable[[float], None]


class SpeechError(Exception):
    """Raised when synthesis or playback fails."""

    def __init__(self, backend_name: str, message: str) -> None:
        self.backend_name = backend_name
        super().__init__(f"[{backend_name}] {message}")


class SpeechBackend(ABC):
    """Abstract base for all speech backends."""

    @abstractmethod
    def name(self) -> str:
        """Return the short backend name (e.g. 'azure')."""
        ...

    def is_configured(self, settings: TTSSettings, voice: str | None) -> bool:
        """Return True when credentials and voice are sufficient to speak."""
        return True

    @abstractmethod
    async def speak(
        self,
        job: SpeechJob,
        settings: TTSSettings,
        on_amplitude: AmplitudeCallback,
    ) -> None:
        """Synthesize and play one job, returning when playback ends.

        Args:
            job: Text, persona and resolved voice.
            settings: Current credentials.
            on_amplitude: Called on the event loop with samples in [0, 1].

        Raises:
            SpeechError: On synthesis or playback failure.
        """
        ...

    async def aclose(self) -> None:
        """Release network resources. Default is a no-op."""
