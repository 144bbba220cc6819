"""Panel orchestration: sequential turns or fastest-first with addenda."""

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing

from metapanel.backends.base import FALLBACK_TEXT, ChatBackend
from metapanel.models import (
    ChatMessage,
    ChatRequest,
    ChatResult,
    PanelRunConfig,
    Persona,
    ResponseMode,
    Role,
    TranscriptMessage,
)
from metapanel.playback import PlaybackQueue

logger = logging.getLogger(__name__)

SEQUENTIAL_INSTRUCTION = (
    "You are one panelist among several. Build on previous panelists' points when helpful."
)
PANELIST_INSTRUCTION = "You are one panelist among several."
ADDENDUM_INSTRUCTION = "Provide a brief addendum (1–2 sentences) responding to the panel so far."
ADDENDUM_PROMPT = "Give a concise addendum (1–2 sentences) acknowledging or refining your point."
PANEL_SO_FAR = "Panel so far:\n"

# Quality gate: warn when fewer than this many panelists give a real answer
_MIN_QUALITY_RESPONSES = 3


def truncate_transcript(
    transcript: Sequence[TranscriptMessage],
    context_window: int,
) -> list[TranscriptMessage]:
    """Last `context_window` entries; 0 keeps nothing."""
    if context_window <= 0:
        return []
    return list(transcript[-context_window:])


def build_history(
    transcript: Sequence[TranscriptMessage],
    personas: Sequence[Persona],
    context_window: int,
) -> list[ChatMessage]:
    """Translate prior turns into chat messages, attributing panelist remarks by name."""
    names = {p.id: p.name for p in personas}
    history: list[ChatMessage] = []
    for message in truncate_transcript(transcript, context_window):
        if message.role is Role.USER:
            history.append(ChatMessage(Role.USER, message.text))
        else:
            speaker = names.get(message.persona_id or "", message.author or "Assistant")
            history.append(ChatMessage(Role.ASSISTANT, f"{speaker}: {message.text}"))
    return history


def resolve_model(persona: Persona, config: PanelRunConfig) -> str:
    return config.model_overrides.get(persona.id) or config.default_model


def _system(persona: Persona, instruction: str) -> ChatMessage:
    return ChatMessage(Role.SYSTEM, f"{persona.system_prompt}\n\n{instruction}")


def _answer_message(persona: Persona, text: str, addendum: bool = False) -> TranscriptMessage:
    suffix = "-add" if addendum else ""
    return TranscriptMessage(
        id=f"m-{uuid.uuid4().hex[:12]}-{persona.id}{suffix}",
        role=Role.ASSISTANT,
        text=text,
        persona_id=persona.id,
        author=persona.name,
        is_addendum=addendum,
    )


async def _complete(chat: ChatBackend, request: ChatRequest) -> ChatResult:
    """Call the chat backend. Never raises; unexpected errors become fallback text."""
    start = time.monotonic()
    try:
        return await chat.complete(request)
    except Exception as exc:
        logger.warning("Chat backend %s raised for %s: %s", chat.name(), request.model, exc)
        return ChatResult(
            text=FALLBACK_TEXT,
            model=request.model,
            latency_sec=time.monotonic() - start,
            fallback=True,
            error=str(exc),
        )


def _emit(
    persona: Persona,
    result: ChatResult,
    playback: PlaybackQueue | None,
    addendum: bool = False,
) -> TranscriptMessage:
    message = _answer_message(persona, result.text, addendum=addendum)
    if playback is not None:
        playback.speak(message.text, persona.id)
    return message


def _check_quality(results: Sequence[ChatResult], panel_size: int) -> None:
    real = sum(1 for r in results if not r.fallback)
    if panel_size >= _MIN_QUALITY_RESPONSES and real < _MIN_QUALITY_RESPONSES:
        logger.warning(
            "WARNING: Only %d/%d panelists answered; the rest used fallback text. "
            "Panel quality is degraded. Check the chat endpoint and model names.",
            real,
            panel_size,
        )


async def _run_sequential(
    question: str,
    history: list[ChatMessage],
    personas: Sequence[Persona],
    config: PanelRunConfig,
    chat: ChatBackend,
    playback: PlaybackQueue | None,
) -> AsyncIterator[TranscriptMessage]:
    history = list(history)
    results: list[ChatResult] = []

    for persona in personas:
        request = ChatRequest(
            model=resolve_model(persona, config),
            messages=[
                _system(persona, SEQUENTIAL_INSTRUCTION),
                *history,
                ChatMessage(Role.USER, question),
            ],
        )
        result = await _complete(chat, request)
        results.append(result)
        history.append(ChatMessage(Role.ASSISTANT, f"{persona.name}: {result.text}"))
        yield _emit(persona, result, playback)

    _check_quality(results, len(personas))


async def _ask(
    persona: Persona,
    chat: ChatBackend,
    request: ChatRequest,
) -> tuple[Persona, ChatResult]:
    return persona, await _complete(chat, request)


def _addendum_request(
    persona: Persona,
    personas: Sequence[Persona],
    history: list[ChatMessage],
    answers: dict[str, str],
    config: PanelRunConfig,
) -> ChatRequest | None:
    """Addendum prompt built from the other panelists' answers, or None if there are none."""
    others = [
        f"{other.name}: {answers[other.id]}"
        for other in personas
        if other.id != persona.id and other.id in answers
    ]
    if not others:
        return None
    return ChatRequest(
        model=resolve_model(persona, config),
        messages=[
            _system(persona, ADDENDUM_INSTRUCTION),
            *history,
            ChatMessage(Role.ASSISTANT, PANEL_SO_FAR + "\n".join(others)),
            ChatMessage(Role.USER, ADDENDUM_PROMPT),
        ],
    )


async def _run_fastest_first(
    question: str,
    history: list[ChatMessage],
    personas: Sequence[Persona],
    config: PanelRunConfig,
    chat: ChatBackend,
    playback: PlaybackQueue | None,
) -> AsyncIterator[TranscriptMessage]:
    # Phase A: everyone answers the same snapshot concurrently
    tasks = [
        asyncio.create_task(
            _ask(
                persona,
                chat,
                ChatRequest(
                    model=resolve_model(persona, config),
                    messages=[
                        _system(persona, PANELIST_INSTRUCTION),
                        *history,
                        ChatMessage(Role.USER, question),
                    ],
                ),
            )
        )
        for persona in personas
    ]
    answers: dict[str, str] = {}
    results: list[ChatResult] = []
    try:
        for next_done in asyncio.as_completed(tasks):
            persona, result = await next_done
            answers[persona.id] = result.text
            results.append(result)
            yield _emit(persona, result, playback)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()

    logger.info("Phase A complete: %d/%d answers", len(answers), len(personas))
    _check_quality(results, len(personas))

    # Phase B: addenda in declaration order, each seeing only the others
    for persona in personas:
        request = _addendum_request(persona, personas, history, answers, config)
        if request is None:
            logger.debug("No other answers for %s, skipping addendum", persona.id)
            continue
        result = await _complete(chat, request)
        yield _emit(persona, result, playback, addendum=True)


async def run_panel(
    question: str,
    transcript: Sequence[TranscriptMessage],
    personas: Sequence[Persona],
    config: PanelRunConfig,
    chat: ChatBackend,
    playback: PlaybackQueue | None = None,
) -> AsyncIterator[TranscriptMessage]:
    """Ask the panel one question and yield each answer as soon as it is ready.

    Args:
        question: The user's question.
        transcript: Prior turns, not including the question itself.
        personas: Panelists in declaration order. Empty means nothing to do.
        config: Mode, context window and model selection.
        chat: Chat backend; failures surface as fallback text.
        playback: Optional queue; every answer is enqueued before it is yielded.

    Yields:
        Assistant TranscriptMessages. Sequential mode and Phase B follow
        persona order; Phase A follows network completion order.
    """
    if not personas:
        return

    history = build_history(transcript, personas, config.context_window)
    logger.info(
        "Running %s panel with %d personas, %d history messages",
        config.mode.value,
        len(personas),
        len(history),
    )

    if config.mode is ResponseMode.SEQUENTIAL:
        run = _run_sequential(question, history, personas, config, chat, playback)
    else:
        run = _run_fastest_first(question, history, personas, config, chat, playback)

    async with aclosing(run) as messages:
        async for message in messages:
            yield message
