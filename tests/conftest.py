"""Shared pytest fixtures."""

import asyncio
from pathlib import Path

import pytest

from config.config_loader import AppConfig, ChatConfig, PanelConfig, SpeechConfig
from metapanel.backends.base import FALLBACK_TEXT, ChatBackend
from metapanel.models import (
    ChatRequest,
    ChatResult,
    PanelRunConfig,
    Persona,
    ResponseMode,
    SpeechJob,
    TTSSettings,
)
from metapanel.speech.base import AmplitudeCallback, SpeechBackend, SpeechError


def persona_key(request: ChatRequest) -> str:
    """Persona id encoded in the system prompt of the test personas."""
    return request.messages[0].content.split("\n\n", 1)[0].removeprefix("prompt-")


def make_persona(persona_id: str, name: str | None = None) -> Persona:
    return Persona(
        id=persona_id,
        name=name or persona_id.upper(),
        system_prompt=f"prompt-{persona_id}",
        color="#123456",
    )


class ScriptedChatBackend(ChatBackend):
    """Test double chat backend.

    Replies are popped per persona in call order; delays let tests control
    which concurrent call finishes first.
    """

    def __init__(
        self,
        replies: dict[str, list[str]] | None = None,
        delays: dict[str, float] | None = None,
        fail_for: set[str] | None = None,
    ) -> None:
        self.replies = {k: list(v) for k, v in (replies or {}).items()}
        self.delays = delays or {}
        self.fail_for = fail_for or set()
        self.requests: list[ChatRequest] = []
        self.cancelled: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def name(self) -> str:
        return "scripted"

    async def complete(self, request: ChatRequest) -> ChatResult:
        self.requests.append(request)
        persona_id = persona_key(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(persona_id, 0.0)
            if delay:
                await asyncio.sleep(delay)
            if persona_id in self.fail_for:
                return ChatResult(FALLBACK_TEXT, request.model, 0.0, fallback=True, error="HTTP 500")
            queued = self.replies.get(persona_id)
            text = queued.pop(0) if queued else f"answer from {persona_id}"
            return ChatResult(text, request.model, 0.0)
        except asyncio.CancelledError:
            self.cancelled.append(persona_id)
            raise
        finally:
            self.in_flight -= 1

    async def aclose(self) -> None:
        self.closed = True


class RecordingSpeechBackend(SpeechBackend):
    """Test double speech backend that logs start/end times of each job."""

    def __init__(
        self,
        backend_name: str = "offline",
        log: list[tuple[str, str, float]] | None = None,
        delays: dict[str, float] | None = None,
        fail_on: set[str] | None = None,
        samples: tuple[float, ...] = (0.5,),
        configured: bool = True,
    ) -> None:
        self._name = backend_name
        self.log = log if log is not None else []
        self.delays = delays or {}
        self.fail_on = fail_on or set()
        self.samples = samples
        self.configured = configured
        self.jobs: list[SpeechJob] = []
        self.closed = False

    def name(self) -> str:
        return self._name

    def is_configured(self, settings: TTSSettings, voice: str | None) -> bool:
        return self.configured

    async def speak(self, job: SpeechJob, settings: TTSSettings, on_amplitude: AmplitudeCallback) -> None:
        loop = asyncio.get_running_loop()
        self.jobs.append(job)
        if job.text in self.fail_on:
            raise SpeechError(self._name, f"synthesis failed for {job.text}")
        self.log.append(("start", job.text, loop.time()))
        for sample in self.samples:
            on_amplitude(sample)
        await asyncio.sleep(self.delays.get(job.text, 0.01))
        self.log.append(("end", job.text, loop.time()))

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def two_personas() -> list[Persona]:
    return [make_persona("p1", "P1"), make_persona("p2", "P2")]


@pytest.fixture
def three_personas() -> list[Persona]:
    return [make_persona("p1", "P1"), make_persona("p2", "P2"), make_persona("p3", "P3")]


@pytest.fixture
def sequential_config() -> PanelRunConfig:
    return PanelRunConfig(mode=ResponseMode.SEQUENTIAL, context_window=20, default_model="llama3.1")


@pytest.fixture
def fastest_config() -> PanelRunConfig:
    return PanelRunConfig(mode=ResponseMode.FASTEST_FIRST, context_window=20, default_model="llama3.1")


@pytest.fixture
def sample_app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        chat=ChatConfig(
            base_url="http://localhost:11434",
            model="llama3.1",
            model_overrides={"p2": "mistral"},
        ),
        panel=PanelConfig(
            mode="sequential",
            context_window=20,
            personas_dir=tmp_path / "personas",
            members=["p2", "p1"],
        ),
        speech=SpeechConfig(enabled=True, provider="offline", default_voice="Alex"),
    )
