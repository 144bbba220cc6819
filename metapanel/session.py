"""In-memory panel session: transcript ownership and one run at a time."""

import logging
import uuid
from collections.abc import AsyncIterator, Sequence

from metapanel.backends.base import ChatBackend
from metapanel.models import PanelRunConfig, Persona, ResponseMode, Role, TranscriptMessage
from metapanel.orchestrator import run_panel
from metapanel.playback import PlaybackQueue

logger = logging.getLogger(__name__)


class SessionBusyError(RuntimeError):
    """Raised when a question is asked while the panel is still answering."""


class PanelSession:
    """Owns the append-only transcript and drives the orchestrator per question."""

    def __init__(
        self,
        personas: Sequence[Persona],
        config: PanelRunConfig,
        chat: ChatBackend,
        playback: PlaybackQueue | None = None,
    ) -> None:
        self.personas = list(personas)
        self.config = config
        self.chat = chat
        self.playback = playback
        self._transcript: list[TranscriptMessage] = []
        self._in_flight: set[str] = set()
        self._busy = False

    @property
    def transcript(self) -> tuple[TranscriptMessage, ...]:
        return tuple(self._transcript)

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def in_flight(self) -> frozenset[str]:
        """Fastest-first panelists whose first answer is still pending. Empty in sequential mode."""
        return frozenset(self._in_flight)

    async def ask(self, question: str) -> AsyncIterator[TranscriptMessage]:
        """Append the question, then append and yield each panel answer.

        Raises:
            SessionBusyError: If another question is still being answered.
        """
        question = question.strip()
        if not question:
            return
        if self._busy:
            raise SessionBusyError("The panel is still answering the previous question")

        snapshot = list(self._transcript)
        self._transcript.append(
            TranscriptMessage(id=f"m-{uuid.uuid4().hex[:12]}-u", role=Role.USER, text=question, author="You")
        )
        self._busy = True
        if self.config.mode is ResponseMode.FASTEST_FIRST:
            self._in_flight = {p.id for p in self.personas}
        try:
            async for message in run_panel(
                question,
                snapshot,
                self.personas,
                self.config,
                self.chat,
                self.playback,
            ):
                self._transcript.append(message)
                if not message.is_addendum:
                    self._in_flight.discard(message.persona_id or "")
                yield message
        finally:
            self._in_flight = set()
            self._busy = False
        logger.debug("Transcript now has %d messages", len(self._transcript))

    async def aclose(self) -> None:
        if self.playback is not None:
            await self.playback.aclose()
        await self.chat.aclose()
