"""Tests for metapanel/orchestrator.py."""

import asyncio
import logging
from dataclasses import replace
from unittest.mock import MagicMock, call

from metapanel.backends.base import FALLBACK_TEXT, ChatBackend
from metapanel.models import ChatMessage, ChatRequest, ChatResult, Role, TranscriptMessage
from metapanel.orchestrator import (
    ADDENDUM_PROMPT,
    PANELIST_INSTRUCTION,
    SEQUENTIAL_INSTRUCTION,
    build_history,
    run_panel,
    truncate_transcript,
)
from tests.conftest import ScriptedChatBackend, make_persona, persona_key


async def _collect(agen) -> list[TranscriptMessage]:
    return [m async for m in agen]


def _user(text: str) -> TranscriptMessage:
    return TranscriptMessage(id=f"u-{text}", role=Role.USER, text=text, author="You")


def _assistant(persona_id: str, text: str, author: str = "") -> TranscriptMessage:
    return TranscriptMessage(id=f"a-{text}", role=Role.ASSISTANT, text=text, persona_id=persona_id, author=author)


# --- history construction ---

def test_truncate_transcript_keeps_tail():
    transcript = [_user(str(i)) for i in range(5)]
    assert [m.text for m in truncate_transcript(transcript, 2)] == ["3", "4"]


def test_truncate_transcript_zero_keeps_nothing():
    transcript = [_user(str(i)) for i in range(5)]
    assert truncate_transcript(transcript, 0) == []


def test_build_history_attributes_panelists_by_name(two_personas):
    transcript = [_user("Q0"), _assistant("p1", "old answer")]
    history = build_history(transcript, two_personas, 20)
    assert history == [
        ChatMessage(Role.USER, "Q0"),
        ChatMessage(Role.ASSISTANT, "P1: old answer"),
    ]


def test_build_history_unknown_persona_uses_author_then_assistant(two_personas):
    transcript = [_assistant("gone", "x", author="Former Member"), _assistant("gone", "y")]
    history = build_history(transcript, two_personas, 20)
    assert history[0].content == "Former Member: x"
    assert history[1].content == "Assistant: y"


# --- sequential mode ---

async def test_sequential_scenario_builds_on_previous_answer(two_personas, sequential_config):
    chat = ScriptedChatBackend(replies={"p1": ["A1"], "p2": ["A2"]})

    messages = await _collect(run_panel("Q", [], two_personas, sequential_config, chat))

    assert [(m.persona_id, m.text) for m in messages] == [("p1", "A1"), ("p2", "A2")]
    assert all(m.role is Role.ASSISTANT for m in messages)
    p2_request = chat.requests[1]
    assert ChatMessage(Role.ASSISTANT, "P1: A1") in p2_request.messages
    assert ChatMessage(Role.ASSISTANT, "P1: A1") not in chat.requests[0].messages


async def test_sequential_nth_request_sees_first_n_minus_one_answers(three_personas, sequential_config):
    chat = ScriptedChatBackend(replies={"p1": ["A1"], "p2": ["A2"], "p3": ["A3"]})

    await _collect(run_panel("Q", [], three_personas, sequential_config, chat))

    produced = ["P1: A1", "P2: A2", "P3: A3"]
    for n, request in enumerate(chat.requests):
        prior = [m.content for m in request.messages if m.role is Role.ASSISTANT]
        assert prior == produced[:n]


async def test_sequential_request_shape(two_personas, sequential_config):
    chat = ScriptedChatBackend()
    transcript = [_user("earlier"), _assistant("p2", "earlier answer")]

    await _collect(run_panel("Q", transcript, two_personas, sequential_config, chat))

    first = chat.requests[0].messages
    assert first[0] == ChatMessage(Role.SYSTEM, f"prompt-p1\n\n{SEQUENTIAL_INSTRUCTION}")
    assert first[1:3] == [ChatMessage(Role.USER, "earlier"), ChatMessage(Role.ASSISTANT, "P2: earlier answer")]
    assert first[-1] == ChatMessage(Role.USER, "Q")


async def test_sequential_calls_are_strictly_serial(three_personas, sequential_config):
    chat = ScriptedChatBackend(delays={"p1": 0.01, "p2": 0.01, "p3": 0.01})
    await _collect(run_panel("Q", [], three_personas, sequential_config, chat))
    assert chat.max_in_flight == 1


async def test_model_override_per_persona(two_personas, sequential_config):
    config = replace(sequential_config, model_overrides={"p2": "mistral"})
    chat = ScriptedChatBackend()

    await _collect(run_panel("Q", [], two_personas, config, chat))

    assert [r.model for r in chat.requests] == ["llama3.1", "mistral"]


async def test_context_window_limits_history(two_personas, sequential_config):
    transcript = [_user("q1"), _assistant("p1", "a1"), _user("q2"), _assistant("p2", "a2")]
    config = replace(sequential_config, context_window=2)
    chat = ScriptedChatBackend()

    await _collect(run_panel("Q", transcript, two_personas, config, chat))

    contents = [m.content for m in chat.requests[0].messages[1:-1]]
    assert contents == ["q2", "P2: a2"]


async def test_context_window_zero_sends_no_history(two_personas, sequential_config):
    transcript = [_user("q1"), _assistant("p1", "a1")]
    config = replace(sequential_config, context_window=0)
    chat = ScriptedChatBackend()

    await _collect(run_panel("Q", transcript, two_personas[:1], config, chat))

    assert [m.role for m in chat.requests[0].messages] == [Role.SYSTEM, Role.USER]


async def test_every_answer_is_enqueued_for_playback_tagged_by_persona(two_personas, sequential_config):
    chat = ScriptedChatBackend(replies={"p1": ["A1"], "p2": ["A2"]})
    playback = MagicMock()

    await _collect(run_panel("Q", [], two_personas, sequential_config, chat, playback))

    assert playback.speak.call_args_list == [call("A1", "p1"), call("A2", "p2")]


async def test_empty_panel_is_a_no_op(sequential_config, fastest_config):
    chat = ScriptedChatBackend()
    assert await _collect(run_panel("Q", [], [], sequential_config, chat)) == []
    assert await _collect(run_panel("Q", [], [], fastest_config, chat)) == []
    assert chat.requests == []


# --- fastest-first mode ---

async def test_fastest_first_scenario_arrival_order_then_addenda(two_personas, fastest_config):
    chat = ScriptedChatBackend(
        replies={"p1": ["A1", "ADD1"], "p2": ["A2", "ADD2"]},
        delays={"p1": 0.05},
    )

    messages = await _collect(run_panel("Q", [], two_personas, fastest_config, chat))

    phase_a = [m for m in messages if not m.is_addendum]
    phase_b = [m for m in messages if m.is_addendum]
    assert [(m.persona_id, m.text) for m in phase_a] == [("p2", "A2"), ("p1", "A1")]
    assert [(m.persona_id, m.text) for m in phase_b] == [("p1", "ADD1"), ("p2", "ADD2")]
    assert messages[:2] == phase_a


async def test_fastest_first_addendum_references_only_other_answers(two_personas, fastest_config):
    """A persona's own Phase-A answer is deliberately left out of its addendum context."""
    chat = ScriptedChatBackend(replies={"p1": ["A1", "ADD1"], "p2": ["A2", "ADD2"]})

    await _collect(run_panel("Q", [], two_personas, fastest_config, chat))

    addenda = {persona_key(r): r for r in chat.requests[2:]}
    p1_context = addenda["p1"].messages[-2]
    p2_context = addenda["p2"].messages[-2]
    assert p1_context == ChatMessage(Role.ASSISTANT, "Panel so far:\nP2: A2")
    assert p2_context == ChatMessage(Role.ASSISTANT, "Panel so far:\nP1: A1")
    assert addenda["p1"].messages[-1] == ChatMessage(Role.USER, ADDENDUM_PROMPT)


async def test_addendum_wording(two_personas, fastest_config):
    chat = ScriptedChatBackend()

    await _collect(run_panel("Q", [], two_personas, fastest_config, chat))

    addendum = chat.requests[-1]
    assert addendum.messages[0].content.endswith(
        "Provide a brief addendum (1–2 sentences) responding to the panel so far."
    )
    assert addendum.messages[-1].content == (
        "Give a concise addendum (1–2 sentences) acknowledging or refining your point."
    )


async def test_fastest_first_phase_a_shares_one_snapshot(three_personas, fastest_config):
    chat = ScriptedChatBackend()
    transcript = [_user("earlier")]

    await _collect(run_panel("Q", transcript, three_personas, fastest_config, chat))

    phase_a = chat.requests[:3]
    for request in phase_a:
        assert request.messages[0].content.endswith(PANELIST_INSTRUCTION)
        assert [m.content for m in request.messages[1:]] == ["earlier", "Q"]


async def test_fastest_first_phase_a_runs_concurrently(three_personas, fastest_config):
    chat = ScriptedChatBackend(delays={"p1": 0.02, "p2": 0.02, "p3": 0.02})
    await _collect(run_panel("Q", [], three_personas, fastest_config, chat))
    assert chat.max_in_flight == 3


async def test_fastest_first_phase_b_waits_for_full_join(three_personas, fastest_config):
    chat = ScriptedChatBackend(delays={"p3": 0.05})

    messages = await _collect(run_panel("Q", [], three_personas, fastest_config, chat))

    flags = [m.is_addendum for m in messages]
    assert flags == [False, False, False, True, True, True]
    assert [m.persona_id for m in messages[3:]] == ["p1", "p2", "p3"]


async def test_fastest_first_singleton_panel_skips_addendum(fastest_config):
    chat = ScriptedChatBackend()

    messages = await _collect(run_panel("Q", [], [make_persona("solo")], fastest_config, chat))

    assert len(messages) == 1
    assert not messages[0].is_addendum
    assert len(chat.requests) == 1


async def test_fastest_first_addenda_are_enqueued(two_personas, fastest_config):
    chat = ScriptedChatBackend(replies={"p1": ["A1", "ADD1"], "p2": ["A2", "ADD2"]}, delays={"p2": 0.02})
    playback = MagicMock()

    await _collect(run_panel("Q", [], two_personas, fastest_config, chat, playback))

    assert playback.speak.call_args_list == [
        call("A1", "p1"), call("A2", "p2"), call("ADD1", "p1"), call("ADD2", "p2"),
    ]


async def test_closing_early_cancels_pending_phase_a_calls(two_personas, fastest_config):
    chat = ScriptedChatBackend(delays={"p1": 10.0})

    run = run_panel("Q", [], two_personas, fastest_config, chat)
    first = await run.__anext__()
    await run.aclose()
    await asyncio.sleep(0.01)

    assert first.persona_id == "p2"
    assert chat.cancelled == ["p1"]


# --- failures ---

async def test_failing_backend_still_yields_one_fallback_per_call(three_personas, sequential_config, fastest_config):
    chat = ScriptedChatBackend(fail_for={"p1", "p2", "p3"})

    sequential = await _collect(run_panel("Q", [], three_personas, sequential_config, chat))
    fastest = await _collect(run_panel("Q", [], three_personas, fastest_config, chat))

    assert [m.text for m in sequential] == [FALLBACK_TEXT] * 3
    assert [m.text for m in fastest] == [FALLBACK_TEXT] * 6


async def test_one_failure_does_not_stop_the_others(two_personas, sequential_config):
    chat = ScriptedChatBackend(replies={"p2": ["A2"]}, fail_for={"p1"})

    messages = await _collect(run_panel("Q", [], two_personas, sequential_config, chat))

    assert [m.text for m in messages] == [FALLBACK_TEXT, "A2"]
    assert ChatMessage(Role.ASSISTANT, f"P1: {FALLBACK_TEXT}") in chat.requests[1].messages


async def test_raising_backend_is_contained(two_personas, fastest_config):
    class ExplodingBackend(ChatBackend):
        def name(self) -> str:
            return "exploding"

        async def complete(self, request: ChatRequest) -> ChatResult:
            raise RuntimeError("socket closed")

    messages = await _collect(run_panel("Q", [], two_personas, fastest_config, ExplodingBackend()))

    assert len(messages) == 4
    assert {m.text for m in messages} == {FALLBACK_TEXT}


async def test_quality_gate_warns_when_most_panelists_fall_back(three_personas, sequential_config, caplog):
    chat = ScriptedChatBackend(fail_for={"p2", "p3"})

    with caplog.at_level(logging.WARNING):
        await _collect(run_panel("Q", [], three_personas, sequential_config, chat))

    assert any("Only 1/3" in msg for msg in caplog.messages)
    assert any("Panel quality is degraded" in msg for msg in caplog.messages)


async def test_quality_gate_silent_for_small_panels(two_personas, sequential_config, caplog):
    chat = ScriptedChatBackend(fail_for={"p1", "p2"})

    with caplog.at_level(logging.WARNING):
        await _collect(run_panel("Q", [], two_personas, sequential_config, chat))

    assert not any("Panel quality is degraded" in msg for msg in caplog.messages)
